"""
Shared utilities for StepGuard.

This package provides:
- Secrets management (Docker secrets with environment fallback)
"""
from .secrets import get_secret, get_smtp_password

__all__ = ["get_secret", "get_smtp_password"]
