"""
TOTP (Time-based One-Time Password) engine.

Implements RFC 6238 on top of the HOTP construction (RFC 4226) so codes
match Google Authenticator, Authy, 1Password and other authenticator apps.

Also provides the enrollment helpers (otpauth:// URI and QR code).
"""
import base64
import hashlib
import hmac
import io
import struct
import time
from typing import Optional, Tuple

import pyotp
import qrcode

from .base32 import decode, normalize_secret, random_secret

DEFAULT_DIGITS = 6
DEFAULT_PERIOD_SECONDS = 30
DEFAULT_STEP_WINDOW = 1


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_code(value, digits: int = DEFAULT_DIGITS) -> str:
    """Keep only the digits of a submitted code, truncated to `digits`."""
    return "".join(ch for ch in str(value or "") if ch.isdigit())[:digits]


def generate_code(
    secret: str,
    at_ms: Optional[int] = None,
    digits: int = DEFAULT_DIGITS,
    period_seconds: int = DEFAULT_PERIOD_SECONDS,
) -> str:
    """
    Compute the TOTP code for a secret at a point in time.

    Args:
        secret: Base32-encoded shared secret.
        at_ms: Unix time in milliseconds (default: now).
        digits: Code length.
        period_seconds: Time step size.

    Returns:
        Zero-padded numeric code, or "" if the secret is empty.
    """
    clean = normalize_secret(secret)
    if not clean:
        return ""

    if at_ms is None:
        at_ms = _now_ms()
    counter = int(at_ms // 1000 // period_seconds)

    digest = hmac.new(decode(clean), struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    binary = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF

    return str(binary % (10 ** digits)).zfill(digits)


def verify_code(
    secret: str,
    code,
    now_ms: Optional[int] = None,
    digits: int = DEFAULT_DIGITS,
    period_seconds: int = DEFAULT_PERIOD_SECONDS,
    step_window: int = DEFAULT_STEP_WINDOW,
) -> bool:
    """
    Verify a submitted code against the secret.

    Args:
        secret: Base32-encoded shared secret.
        code: Code entered by the user (spaces and dashes are ignored).
        now_ms: Reference time in milliseconds (default: now).
        digits: Expected code length.
        period_seconds: Time step size.
        step_window: Number of steps accepted on each side (1 = +-30s).

    Returns:
        True if the code matches any step in the window, False otherwise.
    """
    provided = normalize_code(code, digits)
    if len(provided) != digits:
        return False

    if now_ms is None:
        now_ms = _now_ms()

    matched = False
    for step in range(-step_window, step_window + 1):
        expected = generate_code(
            secret,
            at_ms=now_ms + step * period_seconds * 1000,
            digits=digits,
            period_seconds=period_seconds,
        )
        # No early exit: timing must not reveal which step matched
        if expected and hmac.compare_digest(expected, provided):
            matched = True
    return matched


def build_provisioning_uri(secret: str, email: str, issuer: str) -> str:
    """
    Generate the otpauth:// URI for authenticator apps.

    Args:
        secret: Base32-encoded TOTP secret.
        email: Account label shown in the app.
        issuer: Application name shown in the app.

    Returns:
        otpauth:// URI string.
    """
    totp = pyotp.TOTP(
        normalize_secret(secret) or "",
        digits=DEFAULT_DIGITS,
        interval=DEFAULT_PERIOD_SECONDS,
        digest=hashlib.sha1,
    )
    return totp.provisioning_uri(name=email.strip().lower() or "user", issuer_name=issuer)


def generate_qr_code(uri: str) -> bytes:
    """
    Render the provisioning URI as a PNG QR code.

    Returns:
        PNG image bytes.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=1,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)
    return buffer.read()


def generate_qr_code_base64(uri: str) -> str:
    """Generate a QR code as a data URI ready for an <img> tag."""
    png_bytes = generate_qr_code(uri)
    b64 = base64.b64encode(png_bytes).decode('utf-8')
    return f"data:image/png;base64,{b64}"


def setup_totp(email: str, issuer: str) -> Tuple[str, str, str]:
    """
    Prepare a new enrollment: secret, provisioning URI and QR code.

    Nothing is persisted here; the caller carries the secret in a ticket
    until the user proves possession of it.

    Returns:
        Tuple of (secret, provisioning_uri, qr_code_data_uri).
    """
    secret = random_secret()
    uri = build_provisioning_uri(secret, email, issuer)
    return secret, uri, generate_qr_code_base64(uri)
