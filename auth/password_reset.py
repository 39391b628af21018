"""
auth/password_reset.py -- Forgot-password and reset-password.

forgot_password() issues a PASSWORD_RESET token and emails the link.
reset_password() changes the password once per token:

  1. new_password != confirm_password -> PasswordMismatchError.
  2. Unknown email -> PrincipalNotFoundError.
  3. Token already consumed for this same principal -> ALREADY_APPLIED,
     nothing changes (a replayed or double-submitted request).
  4. Otherwise the ledger validates the token (exists, not expired, not
     consumed, PASSWORD_RESET purpose) and it must belong to the principal
     named by the email. The new hash is computed, then the token is claimed
     and the hash stored in one transaction.

The claim is a conditional update, so two racing requests with the same
token cannot both change the password; the loser reports ALREADY_APPLIED.
A failed write rolls the claim back and the token stays usable.
"""

from __future__ import annotations

import logging

from auth.errors import InvalidOrExpiredTokenError, PasswordMismatchError, PrincipalNotFoundError
from auth.ledgers import ConfirmationTokenLedger
from auth.models import PasswordReset, PrincipalKind, ResetOutcome, ResetReceipt, TokenPurpose
from auth.notifier import deliver, render_message
from auth.protocols import CredentialStore, Hasher, Notifier
from auth.registration import confirmation_link

logger = logging.getLogger("keyward.auth")

RESET_LINK_SENT = "A reset password link has been sent to your email."


class PasswordResetFlow:
    def __init__(
        self,
        store: CredentialStore,
        hasher: Hasher,
        resets: ConfirmationTokenLedger,
        notifier: Notifier,
        base_url: str,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._resets = resets
        self._notifier = notifier
        self.base_url = base_url.rstrip("/")

    def forgot_password(self, email: str, kind: PrincipalKind = PrincipalKind.ADMIN) -> ResetReceipt:
        principal = self._store.find_by_email(kind, email)
        if principal is None:
            raise PrincipalNotFoundError("No such user with this email.")

        token = self._resets.issue(principal, TokenPurpose.PASSWORD_RESET)
        link = confirmation_link(self.base_url, token.token)
        body = render_message(
            "forgot_password.txt",
            name=_display_name(principal),
            reset_url=link,
            expires_minutes=int(self._resets.ttl.total_seconds() // 60),
        )
        notified = deliver(self._notifier, principal.email, "Password reset request", body)
        return ResetReceipt(message=RESET_LINK_SENT, reset_link=link, notified=notified)

    def reset_password(self, request: PasswordReset, kind: PrincipalKind = PrincipalKind.ADMIN) -> ResetOutcome:
        if request.new_password != request.confirm_password:
            raise PasswordMismatchError("New password and confirm password do not match.")

        principal = self._store.find_by_email(kind, request.email)
        if principal is None:
            raise PrincipalNotFoundError(f"User not found with email: {request.email}")

        existing = self._resets.lookup(request.token)
        if (
            existing is not None
            and existing.consumed
            and existing.purpose is TokenPurpose.PASSWORD_RESET
            and existing.principal_kind is principal.kind
            and existing.principal_id == principal.id
        ):
            logger.info("Reset for %s %s already applied; skipping", kind.value, principal.username)
            return ResetOutcome.ALREADY_APPLIED

        owner = self._resets.consume(request.token, TokenPurpose.PASSWORD_RESET)
        if owner.kind is not principal.kind or owner.id != principal.id:
            logger.info("Reset token presented for a different account than %s", principal.username)
            raise InvalidOrExpiredTokenError("Token is invalid or has expired.")

        principal.hashed_password = self._hasher.hash(request.new_password)
        with self._store.transaction() as conn:
            if not self._resets.mark_consumed(request.token, conn=conn):
                return ResetOutcome.ALREADY_APPLIED
            self._store.save(principal, conn=conn)
        logger.info("Password reset for %s %s", kind.value, principal.username)
        return ResetOutcome.APPLIED


def _display_name(principal) -> str:
    full_name = getattr(principal, "full_name", "")
    if full_name:
        return full_name
    return f"{getattr(principal, 'first_name', '')} {getattr(principal, 'last_name', '')}".strip() or principal.username
