"""
Step-up two-factor flows.

Enable:
    start_enable      -> ticket(enable-verify-app, pending secret) + QR code
    complete_enable   -> authenticator code checked against the pending secret,
                         recovery codes issued, state persisted

Disable:
    start_disable         -> email code sent, ticket(disable-verify-email)
    resend_disable_code   -> new email code, fresh ticket (same phase)
    verify_disable_email  -> email code checked, ticket(disable-verify-app)
    complete_disable      -> second factor checked, state persisted, recovery codes purged

Every step re-verifies the ticket minted by the previous one against the
caller's session, so a step cannot be skipped or replayed by another account.
"""
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..auth.base32 import decode
from ..auth.codes import EMAIL_CODE_DIGITS, mask_email, only_digits
from ..auth.errors import (
    ChallengeError,
    FactorError,
    FlowStateError,
    InvalidCodeError,
    PasskeyProofError,
    StepGuardError,
)
from ..auth.factors import (
    AvailableFactors,
    BiometricAttempt,
    ExplicitConfirm,
    RecoveryAttempt,
    TotpAttempt,
    VerificationAttempt,
)
from ..auth.passkey_proof import PasskeyProofVerifier
from ..auth.tickets import TicketPhase, TicketSigner
from ..auth.totp import DEFAULT_DIGITS, DEFAULT_PERIOD_SECONDS, normalize_code, setup_totp, verify_code
from ..database.challenge_store import ChallengeOutcome, ChallengeStore
from ..database.passkey_registry import PasskeyRegistry
from ..database.recovery_vault import RecoveryCodeVault, RecoverySchemaMissing, generate_codes
from ..database.two_factor_store import TwoFactorRecord, TwoFactorStateStore
from ..notifications.mailer import Mailer

logger = logging.getLogger(__name__)

DEFAULT_ISSUER = "StepGuard"

MSG_ALREADY_ENABLED = "Two-step verification is already enabled."
MSG_ALREADY_DISABLED = "Two-step verification is already disabled."
MSG_NOT_ENABLED = "Two-step verification is not enabled."
MSG_INVALID_APP_CODE = "Invalid authenticator code."
MSG_WRONG_APP_CODE = "Invalid authenticator code. Try again."
MSG_INVALID_EMAIL_CODE = "Invalid email code."
MSG_CODE_EXPIRED = "Code expired. Request a new code."
MSG_ATTEMPTS_EXHAUSTED = "You reached the limit of 7 attempts. Request a new code, this one is no longer valid."
MSG_FACTOR_REQUIRED = "Confirm with your authenticator app, a recovery code or a passkey."
MSG_CONFIRM_REQUIRED = "Confirm to disable two-step verification."


@dataclass(frozen=True)
class SessionIdentity:
    """Authenticated caller, as resolved from the session token."""
    user_id: str
    email: str


@dataclass(frozen=True)
class EnableStart:
    phase: TicketPhase
    ticket: str
    manual_code: str
    otpauth_uri: str
    qr_code_data_url: str
    issuer: str
    digits: int = DEFAULT_DIGITS
    period_seconds: int = DEFAULT_PERIOD_SECONDS


@dataclass(frozen=True)
class EnableResult:
    enabled_at: Optional[datetime]
    recovery_codes: List[str]


@dataclass(frozen=True)
class DisableStart:
    phase: TicketPhase
    ticket: str
    email_mask: str


@dataclass(frozen=True)
class EmailVerified:
    phase: TicketPhase
    ticket: str
    factors: AvailableFactors


@dataclass(frozen=True)
class DisableResult:
    disabled_at: Optional[datetime]
    method: str


@dataclass(frozen=True)
class VerifyResult:
    method: str


class TwoFactorFlow:
    """
    Orchestrates the enable/disable flows over the stores and the ticket signer.

    Example usage:
        flow = TwoFactorFlow(state_store, challenges, recovery, tickets, mailer)
        started = flow.start_enable(identity)
        result = flow.complete_enable(identity, started.ticket, "123456")
    """

    def __init__(
        self,
        state_store: TwoFactorStateStore,
        challenges: ChallengeStore,
        recovery: RecoveryCodeVault,
        tickets: TicketSigner,
        mailer: Mailer,
        passkeys: Optional[PasskeyRegistry] = None,
        passkey_proofs: Optional[PasskeyProofVerifier] = None,
        issuer: str = DEFAULT_ISSUER,
    ):
        self.state_store = state_store
        self.challenges = challenges
        self.recovery = recovery
        self.tickets = tickets
        self.mailer = mailer
        self.passkeys = passkeys
        self.passkey_proofs = passkey_proofs
        self.issuer = issuer

    # ==========================================
    # Status
    # ==========================================

    def status(self, identity: SessionIdentity) -> TwoFactorRecord:
        return self.state_store.read(identity.user_id)

    def available_factors(self, identity: SessionIdentity, record: TwoFactorRecord) -> AvailableFactors:
        """Which second factors the user can present right now."""
        try:
            recovery = self.recovery.count_remaining(identity.user_id) > 0
        except RecoverySchemaMissing:
            recovery = False
        passkey = self.passkeys.has_passkey(identity.user_id) if self.passkeys else False
        return AvailableFactors(
            totp=bool(record.enabled and decode(record.secret)),
            recovery=recovery,
            passkey=passkey,
        )

    # ==========================================
    # Enable
    # ==========================================

    def start_enable(self, identity: SessionIdentity) -> EnableStart:
        """
        Generate a candidate secret and hand it out inside a ticket.

        Nothing is stored until complete_enable succeeds.

        Raises:
            FlowStateError: If two-step verification is already enabled.
        """
        if self.state_store.read(identity.user_id).enabled:
            raise FlowStateError(MSG_ALREADY_ENABLED)

        secret, uri, qr_code = setup_totp(identity.email, self.issuer)
        ticket = self.tickets.mint(
            identity.user_id,
            identity.email,
            TicketPhase.ENABLE_VERIFY_APP,
            pending_secret=secret,
        )
        logger.info(f"Two-factor enable started for user {identity.user_id}")

        return EnableStart(
            phase=TicketPhase.ENABLE_VERIFY_APP,
            ticket=ticket,
            manual_code=secret,
            otpauth_uri=uri,
            qr_code_data_url=qr_code,
            issuer=self.issuer,
        )

    def complete_enable(self, identity: SessionIdentity, ticket: str, code: str) -> EnableResult:
        """
        Confirm the authenticator app and turn two-step verification on.

        Raises:
            TicketError: Ticket invalid, expired, for another phase or account.
            FlowStateError: Already enabled.
            InvalidCodeError: Code malformed or not matching the pending secret.
        """
        payload = self.tickets.verify(ticket, identity.user_id, identity.email, TicketPhase.ENABLE_VERIFY_APP)

        if self.state_store.read(identity.user_id).enabled:
            raise FlowStateError(MSG_ALREADY_ENABLED)

        normalized = normalize_code(code)
        if len(normalized) != DEFAULT_DIGITS:
            raise InvalidCodeError(MSG_INVALID_APP_CODE)
        if not verify_code(payload.pending_secret, normalized):
            raise InvalidCodeError(MSG_WRONG_APP_CODE)

        recovery_codes = generate_codes()
        self.recovery.replace_all(identity.user_id, recovery_codes)

        try:
            record = self.state_store.enable(identity.user_id, payload.pending_secret)
        except (StepGuardError, SQLAlchemyError):
            # Codes must not outlive a failed enable
            try:
                self.recovery.clear_all(identity.user_id)
            except (RecoverySchemaMissing, SQLAlchemyError) as cleanup_error:
                logger.error(f"Could not clear recovery codes after failed enable: {cleanup_error}")
            raise

        logger.info(f"Two-factor enabled for user {identity.user_id}")
        return EnableResult(enabled_at=record.enabled_at, recovery_codes=recovery_codes)

    # ==========================================
    # Disable
    # ==========================================

    def start_disable(self, identity: SessionIdentity, code: Optional[str] = None) -> DisableStart:
        """
        Send an email code and open the disable flow.

        Args:
            code: Optional authenticator (or recovery) code checked before the email is sent.

        Raises:
            FlowStateError: Already disabled.
            InvalidCodeError: The optional code was supplied and is wrong.
        """
        record = self.state_store.read(identity.user_id)
        if not record.enabled:
            raise FlowStateError(MSG_ALREADY_DISABLED)

        if code is not None:
            self._check_live_code(identity, record, code)

        return self._send_disable_code(identity)

    def resend_disable_code(self, identity: SessionIdentity, ticket: str) -> DisableStart:
        """Issue a new email code for an open disable flow."""
        self.tickets.verify(ticket, identity.user_id, identity.email, TicketPhase.DISABLE_VERIFY_EMAIL)

        if not self.state_store.read(identity.user_id).enabled:
            raise FlowStateError(MSG_ALREADY_DISABLED)

        return self._send_disable_code(identity)

    def verify_disable_email(self, identity: SessionIdentity, ticket: str, email_code: str) -> EmailVerified:
        """
        Check the email code and move the flow to the second-factor step.

        Raises:
            TicketError, FlowStateError, InvalidCodeError
            ChallengeError: Code wrong, expired or out of attempts.
        """
        self.tickets.verify(ticket, identity.user_id, identity.email, TicketPhase.DISABLE_VERIFY_EMAIL)

        record = self.state_store.read(identity.user_id)
        if not record.enabled:
            raise FlowStateError(MSG_ALREADY_DISABLED)

        submitted = only_digits(email_code)[:EMAIL_CODE_DIGITS]
        if len(submitted) != EMAIL_CODE_DIGITS:
            raise InvalidCodeError(MSG_INVALID_EMAIL_CODE)

        result = self.challenges.verify(identity.email, submitted)
        if result.outcome is ChallengeOutcome.EXPIRED:
            raise ChallengeError(MSG_CODE_EXPIRED)
        if result.outcome is ChallengeOutcome.RATE_LIMITED:
            raise ChallengeError(MSG_ATTEMPTS_EXHAUSTED, rate_limited=True, attempts_left=0)
        if result.outcome is ChallengeOutcome.INVALID:
            n = result.attempts_left
            raise ChallengeError(
                f"Invalid code. Try again. {n} attempt{'' if n == 1 else 's'} remaining.",
                attempts_left=n,
            )

        next_ticket = self.tickets.mint(identity.user_id, identity.email, TicketPhase.DISABLE_VERIFY_APP)
        return EmailVerified(
            phase=TicketPhase.DISABLE_VERIFY_APP,
            ticket=next_ticket,
            factors=self.available_factors(identity, record),
        )

    def complete_disable(
        self,
        identity: SessionIdentity,
        ticket: str,
        attempt: Optional[VerificationAttempt],
    ) -> DisableResult:
        """
        Check the second factor and turn two-step verification off.

        Raises:
            TicketError, FlowStateError
            FactorError: No usable factor supplied (required=True) or the factor is wrong.
        """
        self.tickets.verify(ticket, identity.user_id, identity.email, TicketPhase.DISABLE_VERIFY_APP)

        record = self.state_store.read(identity.user_id)
        if not record.enabled:
            raise FlowStateError(MSG_ALREADY_DISABLED)

        factors = self.available_factors(identity, record)
        method = self._check_attempt(identity, record, factors, attempt)

        disabled = self.state_store.disable(identity.user_id)

        try:
            self.recovery.clear_all(identity.user_id)
        except RecoverySchemaMissing:
            logger.debug("No recovery code table to clear")
        except SQLAlchemyError as e:
            logger.error(f"Could not clear recovery codes for user {identity.user_id}: {e}")

        logger.info(f"Two-factor disabled for user {identity.user_id} via {method}")
        return DisableResult(disabled_at=disabled.disabled_at, method=method)

    # ==========================================
    # Standalone verification
    # ==========================================

    def verify_live_code(self, identity: SessionIdentity, code: str) -> VerifyResult:
        """
        Check an authenticator (or recovery) code without changing state.

        Raises:
            FlowStateError: Two-step verification is not enabled.
            InvalidCodeError: Code malformed or wrong.
        """
        record = self.state_store.read(identity.user_id)
        if not record.enabled:
            raise FlowStateError(MSG_NOT_ENABLED)
        return VerifyResult(method=self._check_live_code(identity, record, code))

    # ==========================================
    # Internals
    # ==========================================

    def _send_disable_code(self, identity: SessionIdentity) -> DisableStart:
        email_code = self.challenges.issue(identity.email)
        try:
            self.mailer.send_two_factor_code(identity.email, email_code)
        except (smtplib.SMTPException, OSError) as e:
            # The challenge stands; the user can ask for a resend
            logger.error(f"Failed to send two-factor email to {mask_email(identity.email)}: {e}")

        ticket = self.tickets.mint(identity.user_id, identity.email, TicketPhase.DISABLE_VERIFY_EMAIL)
        return DisableStart(
            phase=TicketPhase.DISABLE_VERIFY_EMAIL,
            ticket=ticket,
            email_mask=mask_email(identity.email),
        )

    def _consume_recovery(self, identity: SessionIdentity, code: str) -> bool:
        try:
            return self.recovery.consume_if_valid(identity.user_id, code)
        except RecoverySchemaMissing:
            return False

    def _check_live_code(self, identity: SessionIdentity, record: TwoFactorRecord, code) -> str:
        normalized = normalize_code(code)
        if len(normalized) != DEFAULT_DIGITS:
            raise InvalidCodeError(MSG_INVALID_APP_CODE)
        if verify_code(record.secret, normalized):
            return "totp"
        if self._consume_recovery(identity, normalized):
            return "recovery"
        raise InvalidCodeError(MSG_WRONG_APP_CODE)

    def _check_attempt(
        self,
        identity: SessionIdentity,
        record: TwoFactorRecord,
        factors: AvailableFactors,
        attempt: Optional[VerificationAttempt],
    ) -> str:
        """Returns the method that satisfied the check, or raises FactorError."""
        if attempt is None or isinstance(attempt, ExplicitConfirm):
            if factors.none_available and attempt is not None:
                return "confirm"
            message = MSG_CONFIRM_REQUIRED if factors.none_available else MSG_FACTOR_REQUIRED
            raise FactorError(message, factors, required=True)

        if isinstance(attempt, BiometricAttempt):
            if self.passkey_proofs is None:
                raise FactorError(MSG_FACTOR_REQUIRED, factors, required=True)
            try:
                self.passkey_proofs.verify(attempt.proof, identity.user_id, identity.email)
            except PasskeyProofError as e:
                raise FactorError(e.message, factors, required=True)
            return "passkey"

        if isinstance(attempt, TotpAttempt):
            normalized = normalize_code(attempt.code)
            if len(normalized) != DEFAULT_DIGITS:
                raise FactorError(MSG_INVALID_APP_CODE, factors, required=True)
            if verify_code(record.secret, normalized):
                return "totp"
            if self._consume_recovery(identity, normalized):
                return "recovery"
            raise FactorError(MSG_WRONG_APP_CODE, factors)

        if isinstance(attempt, RecoveryAttempt):
            normalized = normalize_code(attempt.code)
            if len(normalized) != DEFAULT_DIGITS:
                raise FactorError(MSG_INVALID_APP_CODE, factors, required=True)
            if self._consume_recovery(identity, normalized):
                return "recovery"
            raise FactorError(MSG_WRONG_APP_CODE, factors)

        raise FactorError(MSG_FACTOR_REQUIRED, factors, required=True)
