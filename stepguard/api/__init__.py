"""
StepGuard REST API.

FastAPI application exposing the two-factor account endpoints.
"""
from .main import app, create_app

__all__ = ["app", "create_app"]
