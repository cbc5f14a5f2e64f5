from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from shared.utils import base58btc_decode, base58btc_encode

ED25519_MULTICODEC_PREFIX = bytes([0xED, 0x01])
DID_KEY_PREFIX = "did:key:z"


def did_from_public_key(public_key: bytes) -> str:
    """
    Create did:key identifier using multicodec (0xed01) + base58btc with 'z' prefix.
    """
    if len(public_key) != 32:
        raise ValueError('Ed25519 public key must be 32 bytes')
    return DID_KEY_PREFIX + base58btc_encode(ED25519_MULTICODEC_PREFIX + public_key)


def public_key_from_did(did: str) -> Ed25519PublicKey:
    """Inverse of did_from_public_key. Only Ed25519 did:key identifiers are supported."""
    if not did.startswith(DID_KEY_PREFIX):
        raise ValueError(f"Not a base58btc did:key: {did}")
    raw = base58btc_decode(did[len(DID_KEY_PREFIX):])
    if not raw.startswith(ED25519_MULTICODEC_PREFIX) or len(raw) != 34:
        raise ValueError("did:key does not hold an Ed25519 public key")
    return Ed25519PublicKey.from_public_bytes(raw[len(ED25519_MULTICODEC_PREFIX):])


@dataclass
class Ed25519Keypair:
    private_pem: bytes

    @property
    def private_key(self) -> Ed25519PrivateKey:
        key = serialization.load_pem_private_key(self.private_pem, password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise TypeError(f"Expected Ed25519 private key, got {type(key).__name__}")
        return key

    def public_bytes(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            serialization.Encoding.Raw,
            serialization.PublicFormat.Raw,
        )

    def did(self) -> str:
        return did_from_public_key(self.public_bytes())

    @classmethod
    def generate(cls) -> "Ed25519Keypair":
        key = Ed25519PrivateKey.generate()
        private_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        return cls(private_pem=private_pem)


def save_keypair(path: Path, kp: Ed25519Keypair) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.with_suffix(".pem").write_bytes(kp.private_pem)


def load_keypair(path: Path) -> Optional[Ed25519Keypair]:
    priv = path.with_suffix(".pem")
    if not priv.exists():
        return None
    return Ed25519Keypair(private_pem=priv.read_bytes())


def load_or_create_keypair(path: Path) -> Ed25519Keypair:
    """Load the device key at `path`, generating and saving one on first use."""
    kp = load_keypair(path)
    if kp is None:
        kp = Ed25519Keypair.generate()
        save_keypair(path, kp)
    return kp
