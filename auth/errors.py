"""
auth/errors.py -- Typed failures raised by the ledgers and flows.

Every error carries a stable machine-readable code and the HTTP status the
api/ layer renders it with. Flows raise on the first violated precondition;
expected business branches (already confirmed, reset already applied) are
return values, not exceptions.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class KeywardError(Exception):
    """Base class for all credential-lifecycle failures."""

    status_code: int = 400
    code: str = "bad_request"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DuplicateCredentialError(KeywardError):
    """Username or email already present in the target collection."""

    status_code = 409
    code = "duplicate_credential"


class RoleNotConfiguredError(KeywardError):
    """A role the flow requires is missing from the role catalog."""

    status_code = 500
    code = "role_not_configured"


class PrincipalNotFoundError(KeywardError):
    status_code = 404
    code = "principal_not_found"


class PasswordMismatchError(KeywardError):
    status_code = 400
    code = "password_mismatch"


class InvalidOrExpiredTokenError(KeywardError):
    """Confirmation/reset token is unknown, expired, consumed or for another purpose."""

    status_code = 400
    code = "invalid_or_expired_token"


class AuthenticationFailedError(KeywardError):
    """Parent of every login failure.

    The subclasses exist for logging. Anything crossing the HTTP boundary is
    rendered as this class's code so callers cannot tell which check failed.
    """

    status_code = 401
    code = "authentication_failed"


class LoginPrincipalNotFoundError(AuthenticationFailedError, PrincipalNotFoundError):
    """Unknown username at login. Still a PrincipalNotFoundError for callers that care."""

    status_code = 401
    code = "principal_not_found"


class AccountNotEnabledError(AuthenticationFailedError):
    code = "account_not_enabled"


class InvalidCredentialError(AuthenticationFailedError):
    code = "invalid_credential"


class NotificationError(KeywardError):
    """Outbound delivery failed. Logged by flows, never rolls anything back."""

    status_code = 502
    code = "notification_failed"
