from __future__ import annotations
import json
from abc import ABC, abstractmethod
from typing import Any, Mapping

from shared.crypto.crypto import ed25519_sign, ed25519_verify
from shared.crypto.keys import Ed25519Keypair, public_key_from_did


def canonical_json(data: Mapping[str, Any]) -> str:
    """Canonical JSON used for signing (sorted keys, no whitespace)."""
    return json.dumps(data, separators=(',', ':'), sort_keys=True)


class Signer(ABC):
    """Abstract base class for the local keystore's signing handle"""
    @abstractmethod
    def sign(self, data: Mapping[str, Any]) -> str:
        """Sign a payload mapping and return the signature"""
        ...

    @abstractmethod
    def sign_bytes(self, message: bytes) -> str:
        """Sign raw bytes and return the signature"""
        ...

    @abstractmethod
    def did(self) -> str:
        """Identity whose key produced the signatures"""
        ...


class Ed25519PayloadSigner(Signer):
    """
    Ed25519 signer backed by the device keypair.

    Signatures are base64url (no padding) over the canonical JSON of the
    payload, and verify against the public key embedded in `did()`.
    """

    def __init__(self, keypair: Ed25519Keypair):
        self.keypair = keypair
        self._did = keypair.did()

    def sign(self, data: Mapping[str, Any]) -> str:
        return self.sign_bytes(canonical_json(data).encode())

    def sign_bytes(self, message: bytes) -> str:
        return ed25519_sign(self.keypair.private_key, message)

    def did(self) -> str:
        return self._did


def verify_payload(did: str, data: Mapping[str, Any], signature: str) -> bool:
    """
    Check `signature` over the canonical JSON of `data` against the key in `did`.

    Returns False for an unsupported or malformed DID instead of raising.
    """
    try:
        public_key = public_key_from_did(did)
    except ValueError:
        return False
    return ed25519_verify(public_key, canonical_json(data).encode(), signature)
