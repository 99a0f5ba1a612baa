"""
API Routes for StepGuard.
"""
from .health import router as health_router
from .two_factor import router as two_factor_router

__all__ = [
    "health_router",
    "two_factor_router",
]
