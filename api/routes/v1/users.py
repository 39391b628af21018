"""
api/routes/v1/users.py -- Provisioned user (employee) endpoints.

Routes:
  POST /api/v1/users                  -- admin provisions a user (201, requires admin bearer token)
  GET  /api/v1/users                  -- users provisioned by the calling admin (requires admin bearer token)
  POST /api/v1/users/login            -- user password login; returns a bearer token
  POST /api/v1/users/forgot-password  -- email a password reset link
  POST /api/v1/users/reset-password   -- set a new password with a reset token
  PUT  /api/v1/users/details          -- edit own profile (requires user bearer token)

The login, password and details handlers are the same ones the admin routes
use, bound to PrincipalKind.USER.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    AssigneeResponse,
    DetailsUpdateRequest,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ResetPasswordRequest,
    ResetPasswordResponse,
    UserProvisionedResponse,
    UserRegisterRequest,
)
from api.routes.v1.auth import (
    edit_details_response,
    forgot_password_response,
    login_response,
    reset_password_response,
)
from auth.dependencies import require_admin, require_user
from auth.models import Admin, PrincipalKind, User
from auth.registration import RegistrationFlow

router = APIRouter()


@router.post("/users", response_model=UserProvisionedResponse, status_code=201)
def create_user(
    request: Request,
    body: UserRegisterRequest,
    current_admin: Admin = Depends(require_admin),
) -> UserProvisionedResponse:
    """Provision a user owned by the calling admin. The user can log in immediately."""
    registration: RegistrationFlow = request.app.state.registration
    receipt = registration.register_user(current_admin.username, body.to_domain())
    return UserProvisionedResponse.from_receipt(receipt)


@router.get("/users", response_model=list[AssigneeResponse])
def list_users(
    request: Request,
    current_admin: Admin = Depends(require_admin),
) -> list[AssigneeResponse]:
    """List the users the calling admin provisioned. Users owned by other admins are not visible."""
    registration: RegistrationFlow = request.app.state.registration
    return [AssigneeResponse.from_user(u) for u in registration.list_users(current_admin.username)]


@router.post("/users/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    return login_response(request, body, PrincipalKind.USER)


@router.post("/users/forgot-password", response_model=ForgotPasswordResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> ForgotPasswordResponse:
    return forgot_password_response(request, body, PrincipalKind.USER)


@router.post("/users/reset-password", response_model=ResetPasswordResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> ResetPasswordResponse:
    return reset_password_response(request, body, PrincipalKind.USER)


@router.put("/users/details", response_model=MessageResponse)
def edit_details(
    request: Request,
    body: DetailsUpdateRequest,
    current_user: User = Depends(require_user),
) -> MessageResponse:
    return edit_details_response(request, body, current_user)
