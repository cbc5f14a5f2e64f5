"""
Payload codec for the secure channel.

Outgoing: placeholder expansion (`did`, `signature`), JSON serialization
and optional passphrase encryption. Incoming: classification of raw frames
into control frames, plaintext JSON payloads and encrypted envelopes.
"""

from __future__ import annotations
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from shared.crypto.crypto import aes_gcm_decrypt, aes_gcm_encrypt
from shared.crypto.signer import Signer, verify_payload
from shared.envelope import DecryptionError

PING = "PING"
PONG = "PONG"

SIGNATURE_FIELD = "signature"
DID_FIELD = "did"


class FrameKind(str, Enum):
    PING = "PING"
    PONG = "PONG"
    PLAIN_PAYLOAD = "PLAIN_PAYLOAD"
    ENCRYPTED_PAYLOAD = "ENCRYPTED_PAYLOAD"


@dataclass(frozen=True)
class ClassifiedFrame:
    kind: FrameKind
    text: str
    value: Any = None  # decoded JSON, PLAIN_PAYLOAD only


@dataclass(frozen=True)
class DecodeResult:
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def classify_frame(data: bytes) -> ClassifiedFrame:
    """
    Decide what a received frame is.

    There is no type tag on the wire: anything that is not a literal
    control word and does not parse as JSON is taken to be an encrypted
    envelope.
    """
    text = data.decode("utf-8", errors="replace")
    if text == PING:
        return ClassifiedFrame(FrameKind.PING, text)
    if text == PONG:
        return ClassifiedFrame(FrameKind.PONG, text)
    try:
        value = json.loads(text)
    except ValueError:
        return ClassifiedFrame(FrameKind.ENCRYPTED_PAYLOAD, text)
    return ClassifiedFrame(FrameKind.PLAIN_PAYLOAD, text, value)


def as_fields(value: Any) -> Dict[str, Any]:
    """Message fields for a decoded JSON value; non-objects go under `data`."""
    if isinstance(value, dict):
        return value
    return {"data": value}


def open_encrypted(envelope: str, passphrase: str) -> DecodeResult:
    try:
        plaintext = decrypt(envelope, passphrase)
    except DecryptionError as e:
        return DecodeResult(error=f"decryption failed: {e}")
    try:
        value = json.loads(plaintext)
    except ValueError as e:
        return DecodeResult(error=f"decrypted payload is not JSON: {e}")
    return DecodeResult(payload=as_fields(value))


def prepare_outgoing(payload: Mapping[str, Any], signer: Signer) -> str:
    """
    Expand placeholders and serialize.

    - a `signature` key (any value) is replaced with the signature over
      the payload as given, minus `signature`; the `did` placeholder is
      signed as-is, before expansion
    - a `did` key (any value) is replaced with the signer's identity

    Keys that are absent from `payload` are absent from the output.
    """
    data = dict(payload)
    signature = None
    if SIGNATURE_FIELD in data:
        unsigned = {k: v for k, v in data.items() if k != SIGNATURE_FIELD}
        signature = signer.sign(unsigned)
    if DID_FIELD in data:
        data[DID_FIELD] = signer.did()
    if signature is not None:
        data[SIGNATURE_FIELD] = signature
    return json.dumps(data, separators=(',', ':'))


def verify_signed_payload(payload: Mapping[str, Any], did: Optional[str] = None,
                          did_placeholder: Any = None) -> bool:
    """
    Verify a payload produced by prepare_outgoing.

    `did` defaults to the payload's own `did` field. The signature covers
    the `did` placeholder the sender passed in, not the expanded value, so
    the receiver must know it (`did_placeholder`, None by default).
    Receive-side augmentation (`from`, `timestamp`) must not be part of
    `payload`.
    """
    signature = payload.get(SIGNATURE_FIELD)
    did = did or payload.get(DID_FIELD)
    if not isinstance(signature, str) or not isinstance(did, str):
        return False
    unsigned = {k: v for k, v in payload.items() if k != SIGNATURE_FIELD}
    if DID_FIELD in unsigned:
        unsigned[DID_FIELD] = did_placeholder
    return verify_payload(did, unsigned, signature)


def encrypt(plaintext: str, passphrase: str) -> str:
    return aes_gcm_encrypt(plaintext, passphrase)


def decrypt(envelope: str, passphrase: str) -> str:
    return aes_gcm_decrypt(envelope, passphrase)
