"""
API request and response models for Keyward REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import (
    AdminRegistration,
    ConfirmationReceipt,
    DetailsUpdate,
    PasswordReset,
    ProvisioningReceipt,
    User,
    UserRegistration,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain. Deliverability
# is proven by the confirmation email, not by the regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"

# bcrypt only reads the first 72 bytes and bcrypt>=5 rejects anything longer.
MAX_PASSWORD_BYTES = 72


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
    return value

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class AdminRegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    username: str = Field(min_length=3, max_length=255, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    password: str = Field(min_length=8, max_length=128)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)

    def to_domain(self) -> AdminRegistration:
        return AdminRegistration(**self.model_dump())


class UserRegisterRequest(BaseModel):
    """Request body for POST /api/v1/users (admin only)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(min_length=1, max_length=200)
    username: str = Field(min_length=3, max_length=255, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    job_title: Optional[str] = Field(default=None, max_length=100)
    department: Optional[str] = Field(default=None, max_length=100)
    password: str = Field(min_length=8, max_length=128)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)

    def to_domain(self) -> UserRegistration:
        return UserRegistration(**self.model_dump())


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    token: str = Field(min_length=1, max_length=64)
    new_password: str = Field(min_length=8, max_length=128)
    confirm_password: str = Field(min_length=1, max_length=128)

    @field_validator("new_password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)

    def to_domain(self) -> PasswordReset:
        return PasswordReset(**self.model_dump())


class DetailsUpdateRequest(BaseModel):
    """Request body for PUT .../details. Admins send first/last name, users send full_name."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    full_name: Optional[str] = Field(default=None, min_length=1, max_length=200)

    def to_domain(self) -> DetailsUpdate:
        return DetailsUpdate(**self.model_dump())


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class AdminRegisteredResponse(BaseModel):
    """Response for POST /api/v1/auth/register."""

    model_config = ConfigDict(frozen=True)

    username: str
    email: str
    first_name: str
    last_name: str
    phone_number: Optional[str]
    message: str
    email_sent: bool

    @classmethod
    def from_receipt(cls, receipt: ConfirmationReceipt) -> "AdminRegisteredResponse":
        return cls(
            username=receipt.username,
            email=receipt.email,
            first_name=receipt.first_name,
            last_name=receipt.last_name,
            phone_number=receipt.phone_number,
            message=receipt.status,
            email_sent=receipt.notified,
        )


class UserProvisionedResponse(BaseModel):
    """Response for POST /api/v1/users."""

    model_config = ConfigDict(frozen=True)

    username: str
    email: str
    full_name: str
    phone_number: Optional[str]
    job_title: Optional[str]
    department: Optional[str]
    created_under: int
    message: str
    email_sent: bool

    @classmethod
    def from_receipt(cls, receipt: ProvisioningReceipt) -> "UserProvisionedResponse":
        return cls(
            username=receipt.username,
            email=receipt.email,
            full_name=receipt.full_name,
            phone_number=receipt.phone_number,
            job_title=receipt.job_title,
            department=receipt.department,
            created_under=receipt.created_under,
            message=receipt.status,
            email_sent=receipt.notified,
        )


class AssigneeResponse(BaseModel):
    """One entry of GET /api/v1/users: a user the calling admin provisioned."""

    model_config = ConfigDict(frozen=True)

    username: str
    full_name: str
    email: str
    job_title: Optional[str]
    phone_number: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "AssigneeResponse":
        return cls(
            username=user.username,
            full_name=user.full_name,
            email=user.email,
            job_title=user.job_title,
            phone_number=user.phone_number,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    access_token: str
    token_type: str = "bearer"


class ForgotPasswordResponse(BaseModel):
    """reset_link is only populated in DEBUG mode; in production it is emailed only."""

    model_config = ConfigDict(frozen=True)

    message: str
    reset_link: Optional[str] = None


class ResetPasswordResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    outcome: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
