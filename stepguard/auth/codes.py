"""
One-time code helpers for the email challenge.
"""
import hashlib
import secrets

EMAIL_CODE_DIGITS = 7


def gen_email_code() -> str:
    """Random 7-digit code (1000000..9999999)."""
    return str(1000000 + secrets.randbelow(9000000))


def new_salt() -> str:
    """16 random bytes as 32 hex characters."""
    return secrets.token_hex(16)


def hash_code(code: str, salt: str) -> str:
    """sha256 hex digest of "{salt}:{code}"."""
    return hashlib.sha256(f"{salt}:{code}".encode("utf-8")).hexdigest()


def only_digits(value) -> str:
    return "".join(ch for ch in str(value or "") if ch.isdigit())


def _mask_part(part: str) -> str:
    if len(part) <= 2:
        return f"{part[:1]}*"
    return f"{part[:2]}***{part[-1]}"


def mask_email(email: str) -> str:
    """
    Mask an address for display and logs.

    >>> mask_email("joao.silva@example.com")
    'jo***a@ex***e.com'
    """
    user, sep, domain = str(email or "").partition("@")
    if not sep or not domain:
        return email

    name, _, tld = domain.partition(".")
    masked_domain = _mask_part(name or domain)
    return f"{_mask_part(user)}@{masked_domain}{'.' + tld if tld else ''}"
