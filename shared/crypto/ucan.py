"""
Capability tokens (UCAN).

A UCAN is a JWT-shaped delegation `header.payload.signature`, each part
base64url without padding:

    header  = {"alg": "EdDSA", "typ": "JWT", "uav": "1.0.0"}
    payload = {"iss": DID, "aud": DID, "nbf": INT, "exp": INT,
               "prf": UCAN | null, "ptc": STRING, "rsc": "*", "fct": []}

`prf` carries the encoded parent token, so following it from any token
leads back to the root issuer of the delegation chain.
"""

from __future__ import annotations
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from shared.crypto.crypto import ed25519_verify
from shared.crypto.keys import public_key_from_did
from shared.crypto.signer import Signer
from shared.envelope import InvalidTokenError
from shared.utils import b64url_nopad, b64url_to_bytes

UCAN_VERSION = "1.0.0"
ONE_MONTH_SECONDS = 60 * 60 * 24 * 30
# tolerate clock skew between the issuing and the verifying device
NBF_SKEW_SECONDS = 60
# a proof chain longer than this is treated as malformed
MAX_PROOF_DEPTH = 32


@dataclass
class Ucan:
    header: Dict[str, Any]
    payload: Dict[str, Any]
    signature: str
    encoded: str

    @property
    def issuer(self) -> str:
        return self.payload["iss"]

    @property
    def audience(self) -> str:
        return self.payload["aud"]

    @property
    def expires_at(self) -> int:
        return self.payload["exp"]

    @property
    def proof(self) -> Optional[str]:
        return self.payload.get("prf")

    def is_expired(self, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return now >= self.expires_at

    def signed_part(self) -> bytes:
        return self.encoded.rsplit(".", 1)[0].encode("ascii")


def _encode_part(data: Dict[str, Any]) -> str:
    return b64url_nopad(json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8"))


def _decode_part(part: str) -> Dict[str, Any]:
    try:
        data = json.loads(b64url_to_bytes(part))
    except ValueError as e:
        raise InvalidTokenError(f"Malformed token segment: {e}") from e
    if not isinstance(data, dict):
        raise InvalidTokenError("Token segment is not a JSON object")
    return data


def issue_ucan(
    signer: Signer,
    audience: str,
    issuer: Optional[str] = None,
    lifetime_seconds: int = ONE_MONTH_SECONDS,
    proof: Optional[str] = None,
    potency: str = "APPEND",
    resource: str = "*",
    facts: Optional[List[Any]] = None,
    now: Optional[int] = None,
) -> str:
    """
    Issue a delegation from `issuer` (defaults to the signer's own DID) to
    `audience`, valid for `lifetime_seconds`.
    """
    now = int(time.time()) if now is None else now
    header = {"alg": "EdDSA", "typ": "JWT", "uav": UCAN_VERSION}
    payload = {
        "aud": audience,
        "exp": now + lifetime_seconds,
        "fct": facts or [],
        "iss": issuer or signer.did(),
        "nbf": now - NBF_SKEW_SECONDS,
        "prf": proof,
        "ptc": potency,
        "rsc": resource,
    }
    signing_input = f"{_encode_part(header)}.{_encode_part(payload)}"
    signature = signer.sign_bytes(signing_input.encode("ascii"))
    return f"{signing_input}.{signature}"


def decode_ucan(token: str) -> Ucan:
    parts = token.split(".")
    if len(parts) != 3:
        raise InvalidTokenError("Token must have three dot-separated segments")
    header = _decode_part(parts[0])
    payload = _decode_part(parts[1])
    for field in ("iss", "aud", "exp"):
        if field not in payload:
            raise InvalidTokenError(f"Token payload missing '{field}'")
    return Ucan(header=header, payload=payload, signature=parts[2], encoded=token)


def root_issuer(token: str) -> str:
    """Issuer at the root of the token's proof chain."""
    ucan = decode_ucan(token)
    depth = 0
    while ucan.proof:
        depth += 1
        if depth > MAX_PROOF_DEPTH:
            raise InvalidTokenError("Proof chain too deep")
        ucan = decode_ucan(ucan.proof)
    return ucan.issuer


def is_signed_by(token: str, did: str) -> bool:
    """True if the token's signature verifies against the key in `did`."""
    ucan = decode_ucan(token)
    try:
        public_key = public_key_from_did(did)
    except ValueError:
        return False
    return ed25519_verify(public_key, ucan.signed_part(), ucan.signature)
