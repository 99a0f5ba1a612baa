"""
Signed step-up tickets.

A ticket threads a multi-step flow across stateless requests:

    base64url(json payload) + "." + base64url(HMAC-SHA256(key, encoded payload))

Each ticket is bound to the user id, the session email and one flow phase,
and expires after 10 minutes by default. Signing keys come from an injected
KeyProvider so they can be rotated without invalidating tickets in flight.
"""
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple, Union

from .base32 import normalize_secret
from .errors import TicketConfigurationError, TicketError, TicketRejection
from ..utils.secrets import get_secret

logger = logging.getLogger(__name__)

TICKET_TYPE = "stepguard-two-factor"
DEFAULT_TICKET_TTL_MS = 10 * 60 * 1000


class TicketPhase(str, Enum):
    """Flow phases a ticket can authorize."""
    ENABLE_VERIFY_APP = "enable-verify-app"
    DISABLE_VERIFY_EMAIL = "disable-verify-email"
    DISABLE_VERIFY_APP = "disable-verify-app"


# ============================================
# Key Providers
# ============================================

class KeyProvider(Protocol):
    """Source of HMAC keys: one to sign with, any number to verify with."""

    def signing_key(self) -> str:
        ...

    def verification_keys(self) -> Sequence[str]:
        ...


class StaticKeyProvider:
    """Fixed key list. The first key signs; every key is accepted on verify."""

    def __init__(self, keys: Sequence[str]):
        self._keys = [k for k in keys if k]
        if not self._keys:
            raise TicketConfigurationError("At least one ticket signing key is required.")

    def signing_key(self) -> str:
        return self._keys[0]

    def verification_keys(self) -> Sequence[str]:
        return list(self._keys)


class EnvKeyProvider:
    """
    Keys from the environment / secret files.

    TICKET_SIGNING_KEY (or SESSION_SECRET) signs new tickets;
    TICKET_SIGNING_KEY_PREVIOUS is still accepted during a rotation.
    """

    def signing_key(self) -> str:
        key = get_secret("TICKET_SIGNING_KEY") or get_secret("SESSION_SECRET")
        if not key:
            raise TicketConfigurationError("TICKET_SIGNING_KEY/SESSION_SECRET is not configured.")
        return key

    def verification_keys(self) -> Sequence[str]:
        keys = [self.signing_key()]
        previous = get_secret("TICKET_SIGNING_KEY_PREVIOUS", default="")
        if previous:
            keys.append(previous)
        return keys


# ============================================
# Signed Payload Codec
# ============================================

def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _signature(encoded_payload: str, key: str) -> str:
    digest = hmac.new(key.encode("utf-8"), encoded_payload.encode("ascii"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def sign_payload(payload: Dict, key: str) -> str:
    """Serialize and sign a payload as `encodedPayload.encodedSignature`."""
    encoded = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{encoded}.{_signature(encoded, key)}"


def read_signed_payload(token: str, keys: Sequence[str]) -> Optional[Dict]:
    """
    Check the signature of a token and decode its payload.

    Args:
        token: Token produced by sign_payload.
        keys: Keys to try (current first, then previous).

    Returns:
        Decoded payload dict, or None if the token is malformed or no key matches.
    """
    token = str(token or "").strip()
    parts = token.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None

    encoded, signature = parts
    try:
        encoded.encode("ascii")
        signature.encode("ascii")
    except UnicodeEncodeError:
        return None

    if not any(hmac.compare_digest(_signature(encoded, key), signature) for key in keys):
        return None

    try:
        payload = json.loads(_b64url_decode(encoded))
    except (ValueError, TypeError):
        return None

    return payload if isinstance(payload, dict) else None


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def _now_ms() -> int:
    return int(time.time() * 1000)


# ============================================
# Step-up Tickets
# ============================================

@dataclass(frozen=True)
class StepUpTicket:
    """Verified ticket contents."""
    user_id: str
    email: str
    phase: TicketPhase
    issued_at: int
    expires_at: int
    nonce: str
    pending_secret: Optional[str] = None


class TicketSigner:
    """
    Mints and verifies step-up tickets.

    Example usage:
        signer = TicketSigner(StaticKeyProvider(["server-key"]))
        ticket = signer.mint("user-1", "a@b.ch", TicketPhase.DISABLE_VERIFY_EMAIL)
        payload = signer.verify(ticket, "user-1", "a@b.ch", TicketPhase.DISABLE_VERIFY_EMAIL)
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        clock: Optional[Callable[[], int]] = None,
        ttl_ms: int = DEFAULT_TICKET_TTL_MS,
    ):
        self.key_provider = key_provider
        self.clock = clock or _now_ms
        self.ttl_ms = ttl_ms

    def mint(
        self,
        user_id: str,
        email: str,
        phase: TicketPhase,
        pending_secret: Optional[str] = None,
        ttl_ms: Optional[int] = None,
    ) -> str:
        """
        Issue a ticket for the next step of a flow.

        Args:
            user_id: Session user id.
            email: Session email (normalized before embedding).
            phase: Phase the ticket authorizes.
            pending_secret: Candidate TOTP secret, only for enable-verify-app.
            ttl_ms: Lifetime override in milliseconds.

        Returns:
            Signed ticket string.
        """
        phase = TicketPhase(phase)
        now = self.clock()
        payload = {
            "typ": TICKET_TYPE,
            "uid": str(user_id or "").strip(),
            "email": normalize_email(email),
            "phase": phase.value,
            "iat": now,
            "exp": now + (self.ttl_ms if ttl_ms is None else ttl_ms),
            "nonce": secrets.token_hex(8),
        }
        secret = normalize_secret(pending_secret)
        if phase is TicketPhase.ENABLE_VERIFY_APP and secret:
            payload["pendingSecret"] = secret

        return sign_payload(payload, self.key_provider.signing_key())

    def verify(
        self,
        ticket: str,
        expected_user_id: str,
        expected_email: str,
        expected_phase: Union[TicketPhase, Tuple[TicketPhase, ...], None] = None,
    ) -> StepUpTicket:
        """
        Validate a ticket against the caller's session and the step being attempted.

        Raises:
            TicketError: With reason INVALID, EXPIRED, WRONG_PHASE or IDENTITY_MISMATCH.
        """
        payload = read_signed_payload(ticket, self.key_provider.verification_keys())
        if payload is None or payload.get("typ") != TICKET_TYPE:
            raise TicketError(TicketRejection.INVALID)

        uid = str(payload.get("uid") or "").strip()
        exp = payload.get("exp")
        if not uid or not isinstance(exp, int) or isinstance(exp, bool):
            raise TicketError(TicketRejection.INVALID)
        if exp < self.clock():
            raise TicketError(TicketRejection.EXPIRED)

        try:
            phase = TicketPhase(payload.get("phase"))
        except ValueError:
            raise TicketError(TicketRejection.WRONG_PHASE)

        if expected_phase is not None:
            allowed = expected_phase if isinstance(expected_phase, tuple) else (expected_phase,)
            if phase not in allowed:
                logger.info(f"Ticket phase {phase.value} presented where {[p.value for p in allowed]} expected")
                raise TicketError(TicketRejection.WRONG_PHASE)

        if uid != str(expected_user_id or "").strip():
            raise TicketError(TicketRejection.IDENTITY_MISMATCH)
        if normalize_email(payload.get("email")) != normalize_email(expected_email):
            raise TicketError(TicketRejection.IDENTITY_MISMATCH)

        pending_secret = None
        if phase is TicketPhase.ENABLE_VERIFY_APP:
            pending_secret = normalize_secret(payload.get("pendingSecret"))
            if not pending_secret:
                raise TicketError(TicketRejection.INVALID, "Authenticator secret missing from the session.")

        return StepUpTicket(
            user_id=uid,
            email=normalize_email(payload.get("email")),
            phase=phase,
            issued_at=int(payload.get("iat") or 0),
            expires_at=exp,
            nonce=str(payload.get("nonce") or ""),
            pending_secret=pending_secret,
        )
