"""
Second-factor attempts submitted to the final step of a flow.

Exactly one variant is built per request; the flow dispatches on its type.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Union


@dataclass(frozen=True)
class TotpAttempt:
    """Authenticator code; a recovery code typed into the same field is also accepted."""
    code: str


@dataclass(frozen=True)
class RecoveryAttempt:
    code: str


@dataclass(frozen=True)
class BiometricAttempt:
    proof: str


@dataclass(frozen=True)
class ExplicitConfirm:
    """Plain confirmation, valid only when the account has no usable factor."""


VerificationAttempt = Union[TotpAttempt, RecoveryAttempt, BiometricAttempt, ExplicitConfirm]


@dataclass(frozen=True)
class AvailableFactors:
    totp: bool
    recovery: bool
    passkey: bool

    @property
    def none_available(self) -> bool:
        return not (self.totp or self.recovery or self.passkey)

    def auth_methods(self) -> Dict[str, bool]:
        """Shape returned to clients so they can pick a factor."""
        return {"totp": self.totp or self.recovery, "passkey": self.passkey}


def attempt_from_fields(
    code: Optional[str] = None,
    recovery_code: Optional[str] = None,
    passkey_proof: Optional[str] = None,
    confirm: bool = False,
) -> Optional[VerificationAttempt]:
    """
    Build the attempt from request fields.

    Precedence: passkey proof, recovery code, authenticator code, confirmation.
    Returns None when nothing was supplied.
    """
    if passkey_proof and passkey_proof.strip():
        return BiometricAttempt(proof=passkey_proof.strip())
    if recovery_code and recovery_code.strip():
        return RecoveryAttempt(code=recovery_code.strip())
    if code and code.strip():
        return TotpAttempt(code=code.strip())
    if confirm:
        return ExplicitConfirm()
    return None
