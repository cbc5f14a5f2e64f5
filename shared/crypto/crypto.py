from __future__ import annotations
import os
from functools import lru_cache

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shared.envelope import DecryptionError
from shared.utils import b64decode, b64encode, b64url_nopad, b64url_to_bytes

# Passphrase key derivation, fixed for wire compatibility with existing peers
KDF_SALT = b"fission"
KDF_ITERATIONS = 10000
KEY_LENGTH = 32  # AES-256

IV_LENGTH = 12
# base64 of a 12-byte IV is always 16 chars with no padding
IV_B64_LENGTH = 16


# a channel reuses one passphrase for every frame
@lru_cache(maxsize=32)
def key_from_passphrase(passphrase: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def aes_gcm_encrypt(plaintext: str, passphrase: str) -> str:
    """
    Encrypt `plaintext` under a key derived from `passphrase`.

    Returns base64(iv) + base64(ciphertext || tag), no separator.
    """
    iv = os.urandom(IV_LENGTH)
    key = key_from_passphrase(passphrase)
    # AESGCM appends the 128-bit tag to the ciphertext
    ct = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return b64encode(iv) + b64encode(ct)


def aes_gcm_decrypt(envelope: str, passphrase: str) -> str:
    """
    Inverse of aes_gcm_encrypt.

    Raises DecryptionError for a wrong passphrase, tampered data or a
    malformed envelope. Never returns partial output.
    """
    if len(envelope) <= IV_B64_LENGTH:
        raise DecryptionError("Envelope too short")
    try:
        iv = b64decode(envelope[:IV_B64_LENGTH])
        ct = b64decode(envelope[IV_B64_LENGTH:])
    except ValueError as e:
        raise DecryptionError(f"Malformed envelope: {e}") from e
    if len(iv) != IV_LENGTH:
        raise DecryptionError(f"Expected {IV_LENGTH}-byte IV, got {len(iv)}")

    key = key_from_passphrase(passphrase)
    try:
        pt = AESGCM(key).decrypt(iv, ct, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e
    try:
        return pt.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Plaintext is not valid UTF-8") from e


def ed25519_sign(private_key: Ed25519PrivateKey, message: bytes) -> str:
    return b64url_nopad(private_key.sign(message))


def ed25519_verify(public_key: Ed25519PublicKey, message: bytes, sig_b64url: str) -> bool:
    try:
        public_key.verify(b64url_to_bytes(sig_b64url), message)
        return True
    except (InvalidSignature, ValueError):
        return False
