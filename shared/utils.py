from __future__ import annotations
import base64
import binascii
import re
import time

# ========================================
#           ENCODING HELPERS
# ========================================
"""
Binary values travel in three encodings:
- standard base64 (with padding) inside encrypted envelopes and relay frames
- base64url without padding inside UCAN tokens and signatures
- base58btc (multibase 'z') inside did:key identifiers
"""

_DID_RE = re.compile(r'^did:[a-z0-9]+:[A-Za-z0-9._:%-]+$')

_BASE58_ALPHABET = b'123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz'


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(s: str) -> bytes:
    """Strict standard base64 decode; raises ValueError on bad input."""
    try:
        return base64.b64decode(s.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64: {e}") from e


def b64url_nopad(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_to_bytes(s: str) -> bytes:
    pad = "=" * ((4 - (len(s) % 4)) % 4)
    return base64.urlsafe_b64decode(s + pad)


def base58btc_encode(data: bytes) -> str:
    # Count leading zeros
    zeros = len(data) - len(data.lstrip(b'\x00'))
    num = int.from_bytes(data, 'big')
    enc = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        enc.append(_BASE58_ALPHABET[rem])
    # Add leading '1's for zeros
    enc.extend(b'1' * zeros)
    enc.reverse()
    return enc.decode('ascii')


def base58btc_decode(s: str) -> bytes:
    num = 0
    for ch in s.encode('ascii'):
        idx = _BASE58_ALPHABET.find(bytes([ch]))
        if idx < 0:
            raise ValueError(f"Invalid base58 character: {chr(ch)!r}")
        num = num * 58 + idx
    zeros = len(s) - len(s.lstrip('1'))
    body = num.to_bytes((num.bit_length() + 7) // 8, 'big') if num else b''
    return b'\x00' * zeros + body


# ========================================
#           VALIDATION HELPERS
# ========================================

def is_did(s: str) -> bool:
    """
    Loose DID syntax check (`did:<method>:<id>`), used on values coming
    back from the name directory and from UCAN headers.
    """
    return isinstance(s, str) and bool(_DID_RE.fullmatch(s))


def now_ms() -> int:
    """Unix time in milliseconds."""
    return int(time.time() * 1000)
