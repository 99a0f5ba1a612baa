"""
Two-Factor Account Endpoints.

Step-up flows for an already signed-in user: enable TOTP, disable it with an
email code plus a second factor, or check a code on its own. Every response
is marked no-store.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from ..models import (
    AuthMethods,
    DisableConfirmRequest,
    DisableConfirmResponse,
    DisableEmailRequest,
    DisableEmailResponse,
    DisableStartRequest,
    DisableStartResponse,
    EnableStartResponse,
    EnableVerifyRequest,
    EnableVerifyResponse,
    ErrorResponse,
    ResendResponse,
    TicketRequest,
    TwoFactorStatusResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from ..deps import (
    check_code_submit_limit,
    check_email_send_limit,
    get_current_user,
    get_two_factor_flow,
)
from ...auth.errors import (
    ChallengeError,
    FactorError,
    FlowStateError,
    InvalidCodeError,
    StepGuardError,
    TicketConfigurationError,
    TicketError,
)
from ...auth.factors import attempt_from_fields
from ...database.recovery_vault import RecoverySchemaMissing
from ...database.two_factor_store import AccountNotFoundError, TwoFactorStorageUnavailable
from ...services.two_factor_flow import SessionIdentity, TwoFactorFlow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/account/two-factor", tags=["Two-Factor"])

NO_STORE_HEADERS = {"Cache-Control": "no-store, max-age=0", "Pragma": "no-cache"}

TICKET_ERROR_RESPONSE = {"model": ErrorResponse, "description": "Ticket invalid, expired, wrong phase or wrong account"}
CONFLICT_RESPONSE = {"model": ErrorResponse, "description": "Already enabled / already disabled"}


# ============================================
# Error mapping
# ============================================

def _classify(exc: StepGuardError) -> tuple[int, str]:
    if isinstance(exc, TicketError):
        return status.HTTP_400_BAD_REQUEST, f"TICKET_{exc.reason.name}"
    if isinstance(exc, ChallengeError):
        if exc.rate_limited:
            return status.HTTP_429_TOO_MANY_REQUESTS, "EMAIL_CODE_RATE_LIMITED"
        if exc.attempts_left is None:
            return status.HTTP_400_BAD_REQUEST, "EMAIL_CODE_EXPIRED"
        return status.HTTP_400_BAD_REQUEST, "EMAIL_CODE_INVALID"
    if isinstance(exc, FactorError):
        if exc.required:
            return status.HTTP_428_PRECONDITION_REQUIRED, "FACTOR_REQUIRED"
        return status.HTTP_401_UNAUTHORIZED, "FACTOR_INVALID"
    if isinstance(exc, FlowStateError):
        return status.HTTP_409_CONFLICT, "TWO_FACTOR_STATE_CONFLICT"
    if isinstance(exc, InvalidCodeError):
        return status.HTTP_400_BAD_REQUEST, "CODE_INVALID"
    if isinstance(exc, AccountNotFoundError):
        return status.HTTP_404_NOT_FOUND, "ACCOUNT_NOT_FOUND"
    if isinstance(exc, TicketConfigurationError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR, "TICKET_KEY_MISSING"
    if isinstance(exc, TwoFactorStorageUnavailable):
        return status.HTTP_500_INTERNAL_SERVER_ERROR, "TWO_FACTOR_STORAGE_UNAVAILABLE"
    if isinstance(exc, RecoverySchemaMissing):
        return status.HTTP_500_INTERNAL_SERVER_ERROR, "RECOVERY_STORAGE_UNAVAILABLE"
    return status.HTTP_400_BAD_REQUEST, "TWO_FACTOR_ERROR"


async def two_factor_exception_handler(request: Request, exc: StepGuardError) -> JSONResponse:
    """Render flow errors as `{"detail", "code"}` (+ `auth_methods` / `attempts_left`)."""
    status_code, code = _classify(exc)
    content = {"detail": exc.message, "code": code}

    if isinstance(exc, FactorError) and exc.available_factors is not None:
        content["auth_methods"] = exc.available_factors.auth_methods()
    if isinstance(exc, ChallengeError) and exc.attempts_left is not None:
        content["attempts_left"] = exc.attempts_left

    if status_code >= 500:
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(f"[{request_id}] Two-factor failure: {exc.__class__.__name__}: {exc.message}")
        content["detail"] = "Two-step verification is temporarily unavailable."
    else:
        logger.info(f"Two-factor request rejected: {code}")

    return JSONResponse(status_code=status_code, content=content, headers=NO_STORE_HEADERS)


# ============================================
# Status
# ============================================

@router.get("", response_model=TwoFactorStatusResponse)
async def get_status(
    user: SessionIdentity = Depends(get_current_user),
    flow: TwoFactorFlow = Depends(get_two_factor_flow),
):
    """Current two-step verification state for the signed-in user."""
    record = flow.status(user)
    return TwoFactorStatusResponse(
        enabled=record.enabled,
        enabled_at=record.enabled_at,
        disabled_at=record.disabled_at,
    )


# ============================================
# Enable
# ============================================

@router.post(
    "/enable",
    response_model=EnableStartResponse,
    responses={409: CONFLICT_RESPONSE},
)
async def enable_start(
    user: SessionIdentity = Depends(get_current_user),
    flow: TwoFactorFlow = Depends(get_two_factor_flow),
):
    """
    Start enrollment.

    Returns a QR code, the secret for manual entry and a ticket.
    Two-step verification is not active until confirmed with `PUT /enable`.
    """
    started = flow.start_enable(user)
    return EnableStartResponse(
        phase=started.phase.value,
        ticket=started.ticket,
        manual_code=started.manual_code,
        otpauth_uri=started.otpauth_uri,
        qr_code_data_url=started.qr_code_data_url,
        issuer=started.issuer,
        digits=started.digits,
        period_seconds=started.period_seconds,
    )


@router.put(
    "/enable",
    response_model=EnableVerifyResponse,
    responses={400: TICKET_ERROR_RESPONSE, 409: CONFLICT_RESPONSE},
    dependencies=[Depends(check_code_submit_limit)],
)
async def enable_verify(
    body: EnableVerifyRequest,
    user: SessionIdentity = Depends(get_current_user),
    flow: TwoFactorFlow = Depends(get_two_factor_flow),
):
    """
    Confirm the authenticator app and enable two-step verification.

    Returns recovery codes - they are shown only once.
    """
    result = flow.complete_enable(user, body.ticket, body.code)
    return EnableVerifyResponse(
        enabled=True,
        enabled_at=result.enabled_at,
        recovery_codes=result.recovery_codes,
    )


# ============================================
# Disable
# ============================================

@router.post(
    "/disable",
    response_model=DisableStartResponse,
    responses={400: {"model": ErrorResponse}, 409: CONFLICT_RESPONSE, 429: {"model": ErrorResponse}},
    dependencies=[Depends(check_email_send_limit)],
)
async def disable_start(
    body: Optional[DisableStartRequest] = None,
    user: SessionIdentity = Depends(get_current_user),
    flow: TwoFactorFlow = Depends(get_two_factor_flow),
):
    """
    Start disabling: a 7-digit code is emailed to the account address.

    If `code` is supplied it must be a valid authenticator or recovery code.
    """
    code = body.code if body is not None and body.code else None
    started = flow.start_disable(user, code=code)
    return DisableStartResponse(
        phase=started.phase.value,
        ticket=started.ticket,
        email_mask=started.email_mask,
    )


@router.patch(
    "/disable",
    response_model=ResendResponse,
    responses={400: TICKET_ERROR_RESPONSE, 409: CONFLICT_RESPONSE, 429: {"model": ErrorResponse}},
    dependencies=[Depends(check_email_send_limit)],
)
async def disable_resend(
    body: TicketRequest,
    user: SessionIdentity = Depends(get_current_user),
    flow: TwoFactorFlow = Depends(get_two_factor_flow),
):
    """Send a new email code. Earlier codes stop working."""
    resent = flow.resend_disable_code(user, body.ticket)
    return ResendResponse(phase=resent.phase.value, ticket=resent.ticket)


@router.put(
    "/disable/email",
    response_model=DisableEmailResponse,
    responses={400: TICKET_ERROR_RESPONSE, 409: CONFLICT_RESPONSE, 429: {"model": ErrorResponse}},
    dependencies=[Depends(check_code_submit_limit)],
)
async def disable_verify_email(
    body: DisableEmailRequest,
    user: SessionIdentity = Depends(get_current_user),
    flow: TwoFactorFlow = Depends(get_two_factor_flow),
):
    """Check the emailed code; returns the ticket for the second-factor step."""
    verified = flow.verify_disable_email(user, body.ticket, body.email_code)
    return DisableEmailResponse(
        phase=verified.phase.value,
        ticket=verified.ticket,
        auth_methods=AuthMethods(**verified.factors.auth_methods()),
    )


@router.put(
    "/disable/confirm",
    response_model=DisableConfirmResponse,
    responses={
        400: TICKET_ERROR_RESPONSE,
        401: {"model": ErrorResponse, "description": "Second factor invalid"},
        409: CONFLICT_RESPONSE,
        428: {"model": ErrorResponse, "description": "Second factor required"},
    },
    dependencies=[Depends(check_code_submit_limit)],
)
async def disable_confirm(
    body: DisableConfirmRequest,
    user: SessionIdentity = Depends(get_current_user),
    flow: TwoFactorFlow = Depends(get_two_factor_flow),
):
    """
    Finish disabling with one second factor.

    Accepts an authenticator code, a recovery code or a passkey proof.
    `confirm: true` is only accepted when the account has no usable factor.
    """
    attempt = attempt_from_fields(
        code=body.code,
        recovery_code=body.recovery_code,
        passkey_proof=body.passkey_proof,
        confirm=body.confirm,
    )
    result = flow.complete_disable(user, body.ticket, attempt)
    return DisableConfirmResponse(enabled=False, disabled_at=result.disabled_at)


# ============================================
# Standalone verification
# ============================================

@router.post(
    "/verify",
    response_model=VerifyCodeResponse,
    responses={400: {"model": ErrorResponse}, 409: CONFLICT_RESPONSE},
    dependencies=[Depends(check_code_submit_limit)],
)
async def verify_code(
    body: VerifyCodeRequest,
    user: SessionIdentity = Depends(get_current_user),
    flow: TwoFactorFlow = Depends(get_two_factor_flow),
):
    """Check an authenticator code (or spend a recovery code) without changing two-factor state."""
    result = flow.verify_live_code(user, body.code)
    return VerifyCodeResponse(verified=True, method=result.method)
