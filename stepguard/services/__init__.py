"""
Two-factor flows for StepGuard.
"""
from .two_factor_flow import TwoFactorFlow, SessionIdentity

__all__ = ["TwoFactorFlow", "SessionIdentity"]
