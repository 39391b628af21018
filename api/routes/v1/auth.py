"""
api/routes/v1/auth.py -- Admin account, session and password endpoints.

Routes:
  POST /api/v1/auth/register          -- admin self-registration (201); emails confirmation link
  GET  /api/v1/auth/confirm?token=    -- consume a confirmation token; enables the account
  POST /api/v1/auth/login             -- password login; returns a bearer token
  POST /api/v1/auth/logout            -- revoke the presented bearer token
  POST /api/v1/auth/forgot-password   -- email a password reset link
  POST /api/v1/auth/reset-password    -- set a new password with a reset token
  PUT  /api/v1/auth/details           -- edit own profile (requires admin bearer token)

Security:
  Every login failure (unknown username, disabled account, wrong password)
  returns the same 401 "authentication_failed" body. The specific reason is
  only logged by auth/authentication.py.
  Cache-Control: no-store on login responses.
  The reset link is returned in the response body only when DEBUG is on;
  otherwise it travels by email only.

Other KeywardError subclasses propagate to the handler in api/main.py, which
renders them with their own status and code.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import (
    AdminRegisteredResponse,
    AdminRegisterRequest,
    DetailsUpdateRequest,
    ErrorDetail,
    ErrorResponse,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ResetPasswordRequest,
    ResetPasswordResponse,
)
from auth.authentication import AuthenticationFlow
from auth.dependencies import get_bearer_token, get_current_principal, require_admin
from auth.errors import AuthenticationFailedError
from auth.models import Admin, Principal, PrincipalKind, ResetOutcome
from auth.password_reset import PasswordResetFlow
from auth.profile import ProfileFlow
from auth.registration import RegistrationFlow
from core.config import get_settings

# Auth policy:
# - POST /auth/register, GET /auth/confirm, POST /auth/login,
#   POST /auth/forgot-password, POST /auth/reset-password: public
# - POST /auth/logout: requires a valid bearer token (any kind)
# - PUT  /auth/details: requires admin (require_admin)
router = APIRouter()

_RESET_MESSAGES = {
    ResetOutcome.APPLIED: "Password reset successfully.",
    ResetOutcome.ALREADY_APPLIED: "Password reset already completed.",
}


# ---------------------------------------------------------------------------
# Shared handlers (also mounted for users by api/routes/v1/users.py)
# ---------------------------------------------------------------------------


def login_response(request: Request, body: LoginRequest, kind: PrincipalKind) -> JSONResponse:
    authentication: AuthenticationFlow = request.app.state.authentication
    try:
        receipt = authentication.login(body.username, body.password, kind)
    except AuthenticationFailedError:
        resp = JSONResponse(
            status_code=401,
            content=ErrorResponse(
                error=ErrorDetail(code="authentication_failed", message="Invalid username or password.")
            ).model_dump(),
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            username=receipt.username,
            access_token=receipt.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def forgot_password_response(request: Request, body: ForgotPasswordRequest, kind: PrincipalKind) -> ForgotPasswordResponse:
    password_reset: PasswordResetFlow = request.app.state.password_reset
    receipt = password_reset.forgot_password(body.email, kind)
    link = receipt.reset_link if get_settings().debug else None
    return ForgotPasswordResponse(message=receipt.message, reset_link=link)


def reset_password_response(request: Request, body: ResetPasswordRequest, kind: PrincipalKind) -> ResetPasswordResponse:
    password_reset: PasswordResetFlow = request.app.state.password_reset
    outcome = password_reset.reset_password(body.to_domain(), kind)
    return ResetPasswordResponse(message=_RESET_MESSAGES[outcome], outcome=outcome.value)


def edit_details_response(request: Request, body: DetailsUpdateRequest, principal: Principal) -> MessageResponse:
    profile: ProfileFlow = request.app.state.profile
    message = profile.edit_details(principal.username, body.to_domain(), principal.kind)
    return MessageResponse(message=message)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AdminRegisteredResponse, status_code=201)
def register(request: Request, body: AdminRegisterRequest) -> AdminRegisteredResponse:
    """Register a new admin. The account stays disabled until the emailed link is used."""
    registration: RegistrationFlow = request.app.state.registration
    receipt = registration.register_admin(body.to_domain())
    return AdminRegisteredResponse.from_receipt(receipt)


@router.get("/auth/confirm", response_model=MessageResponse)
def confirm(request: Request, token: str = Query(min_length=1, max_length=64)) -> MessageResponse:
    """Consume a confirmation token and enable its account. Replays report 'already confirmed'."""
    registration: RegistrationFlow = request.app.state.registration
    return MessageResponse(message=registration.confirm_account(token))


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate an admin and issue a bearer token; earlier tokens are revoked."""
    return login_response(request, body, PrincipalKind.ADMIN)


@router.post("/auth/forgot-password", response_model=ForgotPasswordResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> ForgotPasswordResponse:
    return forgot_password_response(request, body, PrincipalKind.ADMIN)


@router.post("/auth/reset-password", response_model=ResetPasswordResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> ResetPasswordResponse:
    return reset_password_response(request, body, PrincipalKind.ADMIN)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> MessageResponse:
    """Revoke the bearer token used for this request."""
    authentication: AuthenticationFlow = request.app.state.authentication
    authentication.logout(get_bearer_token(request))
    return MessageResponse(message="Logged out.")


@router.put("/auth/details", response_model=MessageResponse)
def edit_details(
    request: Request,
    body: DetailsUpdateRequest,
    current_admin: Admin = Depends(require_admin),
) -> MessageResponse:
    return edit_details_response(request, body, current_admin)
