"""
Pydantic Models for the StepGuard API.

Request and response models for the two-factor endpoints.
"""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, ConfigDict


# ============================================
# Two-Factor Models
# ============================================

class TwoFactorStatusResponse(BaseModel):
    """Current two-step verification state."""
    enabled: bool
    enabled_at: Optional[datetime] = None
    disabled_at: Optional[datetime] = None


class EnableStartResponse(BaseModel):
    """
    Enrollment material for the authenticator app.

    Nothing is stored until the code from the app is confirmed with
    `PUT /account/two-factor/enable` using the returned ticket.
    """
    phase: str = "enable-verify-app"
    ticket: str = Field(..., description="Step-up ticket for the next step (10 minutes)")
    manual_code: str = Field(..., description="Base32 secret for manual entry")
    otpauth_uri: str
    qr_code_data_url: str = Field(..., description="PNG data URI")
    issuer: str
    digits: int = 6
    period_seconds: int = 30


class EnableVerifyRequest(BaseModel):
    """Code from the authenticator app, with the ticket from enable-start."""
    ticket: str = Field(..., min_length=1)
    code: str = Field(..., description="6-digit code from the authenticator app")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "ticket": "eyJ0eXAiOi...Q.3q2-Zf...",
                "code": "123456"
            }
        }
    )


class EnableVerifyResponse(BaseModel):
    """
    Two-step verification enabled.

    The recovery codes are shown only once. Each code can be used once
    instead of an authenticator code.
    """
    enabled: bool = True
    enabled_at: Optional[datetime] = None
    recovery_codes: List[str] = Field(..., description="One-time recovery codes (store securely!)")


class DisableStartRequest(BaseModel):
    """Optional authenticator code checked before the email code is sent."""
    code: Optional[str] = Field(None, description="6-digit authenticator or recovery code")


class DisableStartResponse(BaseModel):
    phase: str = "disable-verify-email"
    ticket: str
    email_mask: str = Field(..., description="Masked address the code was sent to")


class TicketRequest(BaseModel):
    ticket: str = Field(..., min_length=1)


class ResendResponse(BaseModel):
    phase: str = "disable-verify-email"
    ticket: str


class DisableEmailRequest(BaseModel):
    ticket: str = Field(..., min_length=1)
    email_code: str = Field(..., description="7-digit code from the email")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "ticket": "eyJ0eXAiOi...Q.3q2-Zf...",
                "email_code": "1234567"
            }
        }
    )


class AuthMethods(BaseModel):
    """Second factors the client may offer."""
    totp: bool
    passkey: bool


class DisableEmailResponse(BaseModel):
    phase: str = "disable-verify-app"
    ticket: str
    auth_methods: AuthMethods


class DisableConfirmRequest(BaseModel):
    """
    Final disable step. Supply one factor: authenticator code,
    recovery code, passkey proof, or `confirm` when no factor is available.
    """
    ticket: str = Field(..., min_length=1)
    code: Optional[str] = None
    recovery_code: Optional[str] = None
    passkey_proof: Optional[str] = None
    confirm: bool = False


class DisableConfirmResponse(BaseModel):
    enabled: bool = False
    disabled_at: Optional[datetime] = None


class VerifyCodeRequest(BaseModel):
    code: str = Field(..., description="6-digit authenticator or recovery code")


class VerifyCodeResponse(BaseModel):
    verified: bool = True
    method: str = Field(..., description="totp or recovery")


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    """Health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


class ServiceHealth(BaseModel):
    """Individual service health."""
    name: str
    status: str
    latency_ms: Optional[float] = None
    error: Optional[str] = None


# ============================================
# Error Models
# ============================================

class ErrorResponse(BaseModel):
    """
    Standard error response.

    `code` identifies the failure for programmatic handling; `auth_methods`
    is present when the client must pick a second factor.
    """
    detail: str = Field(..., description="User-safe error message")
    code: Optional[str] = Field(None, description="Error code for programmatic handling")
    auth_methods: Optional[AuthMethods] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "detail": "Invalid authenticator code. Try again.",
                "code": "FACTOR_INVALID",
                "auth_methods": {"totp": True, "passkey": False}
            }
        }
    )
