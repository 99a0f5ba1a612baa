"""
RFC 4648 base32 codec for TOTP secrets.

Decoding is lenient: padding, whitespace and characters outside the
alphabet are skipped instead of rejected, so secrets that were issued with
separators or lower-case letters keep working.
"""
import secrets
from typing import Optional

ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_INDEX = {ch: i for i, ch in enumerate(ALPHABET)}


def encode(data: bytes) -> str:
    """
    Encode bytes as unpadded base32.

    Args:
        data: Raw bytes.

    Returns:
        Upper-case base32 string without '=' padding.
    """
    value = 0
    bits = 0
    output = []

    for byte in data:
        value = ((value << 8) | byte) & 0xFFFF
        bits += 8
        while bits >= 5:
            output.append(ALPHABET[(value >> (bits - 5)) & 31])
            bits -= 5

    if bits > 0:
        output.append(ALPHABET[(value << (5 - bits)) & 31])

    return "".join(output)


def decode(text: str) -> bytes:
    """
    Decode base32 text, skipping anything that is not in the alphabet.

    Args:
        text: Base32 string (any case, padding optional).

    Returns:
        Decoded bytes. Trailing bits that do not fill a byte are dropped.
    """
    value = 0
    bits = 0
    out = bytearray()

    for ch in str(text or "").upper():
        idx = _INDEX.get(ch)
        if idx is None:
            continue
        value = ((value << 5) | idx) & 0xFFF
        bits += 5
        if bits >= 8:
            out.append((value >> (bits - 8)) & 0xFF)
            bits -= 8

    return bytes(out)


def normalize_secret(value: Optional[str]) -> Optional[str]:
    """Upper-case a secret and drop non-alphabet characters; None if nothing is left."""
    clean = "".join(ch for ch in str(value or "").upper() if ch in _INDEX)
    return clean or None


def random_secret(num_bytes: int = 20) -> str:
    """Generate a new random secret (20 bytes -> 32 base32 characters)."""
    return encode(secrets.token_bytes(num_bytes))
