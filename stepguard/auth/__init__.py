"""
Two-factor primitives for StepGuard.

This package provides:
- TOTP generation and verification (RFC 6238)
- Signed step-up tickets and passkey proofs
- Email challenge code helpers
- Error types shared by the flows
"""
from .totp import (
    generate_code,
    verify_code,
    build_provisioning_uri,
    generate_qr_code_base64,
    setup_totp,
)
from .tickets import TicketPhase, TicketSigner, StepUpTicket, EnvKeyProvider, StaticKeyProvider

__all__ = [
    "generate_code",
    "verify_code",
    "build_provisioning_uri",
    "generate_qr_code_base64",
    "setup_totp",
    "TicketPhase",
    "TicketSigner",
    "StepUpTicket",
    "EnvKeyProvider",
    "StaticKeyProvider",
]
