"""
Exception types for the two-factor flows.

Each class maps to one failure family so the API layer can pick the status
code and tell the client whether to retry, resend, switch factor or restart.
"""
from enum import Enum
from typing import Any, Optional


class StepGuardError(Exception):
    """Base class for all step-up authentication errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TicketConfigurationError(StepGuardError):
    """No signing key is configured on the server."""


class TicketRejection(str, Enum):
    """Why a step-up ticket was refused."""
    INVALID = "invalid_ticket"
    EXPIRED = "expired_ticket"
    WRONG_PHASE = "wrong_phase"
    IDENTITY_MISMATCH = "identity_mismatch"


TICKET_MESSAGES = {
    TicketRejection.INVALID: "Two-step verification session is invalid. Reopen the dialog.",
    TicketRejection.EXPIRED: "Two-step verification session expired. Start the flow again.",
    TicketRejection.WRONG_PHASE: "This step is not available at the current stage of the flow.",
    TicketRejection.IDENTITY_MISMATCH: "Session is out of date for this account. Reopen the dialog.",
}


class TicketError(StepGuardError):
    """A step-up ticket failed signature, expiry, phase or identity checks."""

    def __init__(self, reason: TicketRejection, message: Optional[str] = None):
        super().__init__(message or TICKET_MESSAGES[reason])
        self.reason = reason


class PasskeyProofError(StepGuardError):
    """A passkey (biometric) assertion proof was rejected."""


class ChallengeError(StepGuardError):
    """Email challenge code was wrong, expired or exhausted."""

    def __init__(self, message: str, rate_limited: bool = False, attempts_left: Optional[int] = None):
        super().__init__(message)
        self.rate_limited = rate_limited
        self.attempts_left = attempts_left


class FactorError(StepGuardError):
    """
    Second factor missing or invalid.

    `required` is True when nothing usable was submitted (the client should
    prompt for a factor) and False when the submitted factor was wrong.
    """

    def __init__(self, message: str, available_factors: Any = None, required: bool = False):
        super().__init__(message)
        self.available_factors = available_factors
        self.required = required


class InvalidCodeError(StepGuardError):
    """A submitted one-time code is malformed or does not match."""


class FlowStateError(StepGuardError):
    """The operation does not apply to the current two-factor state."""
