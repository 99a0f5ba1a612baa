"""
Passkey (biometric) assertion proofs.

WebAuthn ceremonies are verified by a separate service. When an assertion
succeeds, that service mints a short-lived proof for the user; the disable
flow accepts the proof as an alternate second factor. Proofs use the same
signed-token format and key provider as step-up tickets.
"""
import logging
import time
from typing import Callable, Optional

from .errors import PasskeyProofError
from .tickets import KeyProvider, normalize_email, read_signed_payload, sign_payload

logger = logging.getLogger(__name__)

PASSKEY_PROOF_TYPE = "stepguard-passkey-proof"
DEFAULT_PROOF_TTL_MS = 3 * 60 * 1000


class PasskeyProofVerifier:
    """Mints and checks passkey proofs bound to a user id and email."""

    def __init__(self, key_provider: KeyProvider, clock: Optional[Callable[[], int]] = None):
        self.key_provider = key_provider
        self.clock = clock or (lambda: int(time.time() * 1000))

    def mint(self, user_id: str, email: str, ttl_ms: int = DEFAULT_PROOF_TTL_MS) -> str:
        now = self.clock()
        payload = {
            "typ": PASSKEY_PROOF_TYPE,
            "uid": str(user_id or "").strip(),
            "email": normalize_email(email),
            "iat": now,
            "exp": now + ttl_ms,
        }
        return sign_payload(payload, self.key_provider.signing_key())

    def verify(self, proof: str, user_id: str, email: str) -> None:
        """
        Raises:
            PasskeyProofError: If the proof is forged, expired or for another account.
        """
        payload = read_signed_payload(proof, self.key_provider.verification_keys())
        if payload is None or payload.get("typ") != PASSKEY_PROOF_TYPE:
            raise PasskeyProofError("Biometric validation is invalid. Try again.")

        exp = payload.get("exp")
        if not isinstance(exp, int) or exp < self.clock():
            raise PasskeyProofError("Biometric validation expired. Try again.")

        if str(payload.get("uid") or "").strip() != str(user_id or "").strip():
            raise PasskeyProofError("Biometric validation does not match this account.")
        if normalize_email(payload.get("email")) != normalize_email(email):
            raise PasskeyProofError("Biometric validation does not match this account.")

        logger.debug(f"Passkey proof accepted for user {user_id}")
