"""Unit tests for auth/password_reset.py -- PasswordResetFlow.

Covers:
- forgot_password() issues a PASSWORD_RESET token and emails the link
- forgot_password() for an unknown email raises PrincipalNotFoundError
- reset_password() with mismatched passwords changes nothing
- reset_password() applies once; a replay reports ALREADY_APPLIED
- Expired, confirmation-purpose and foreign tokens are rejected
- User-kind resets touch the user collection only
- A failed hash or a failed write leaves the token usable for a retry
"""

from __future__ import annotations

import pytest

from auth.errors import (
    InvalidCredentialError,
    InvalidOrExpiredTokenError,
    PasswordMismatchError,
    PrincipalNotFoundError,
)
from auth.models import PasswordReset, PrincipalKind, ResetOutcome, TokenPurpose
from auth.password_reset import RESET_LINK_SENT


def _reset(token: str, new: str = "new-secret-1", confirm: str | None = None, email: str = "alice@x.com") -> PasswordReset:
    return PasswordReset(email=email, token=token, new_password=new, confirm_password=confirm or new)


class TestForgotPassword:
    def test_issues_reset_token(self, services, confirmed_admin):
        receipt = services.password_reset.forgot_password("alice@x.com")
        assert receipt.message == RESET_LINK_SENT
        assert receipt.notified is True

        [message] = services.notifier.sent
        assert message.subject == "Password reset request"
        assert receipt.reset_link in message.body

        token = services.confirmations.lookup(services.notifier.last_token())
        assert token.purpose is TokenPurpose.PASSWORD_RESET
        assert token.principal_id == confirmed_admin.id

    def test_unknown_email(self, services):
        with pytest.raises(PrincipalNotFoundError):
            services.password_reset.forgot_password("nobody@x.com")

    def test_notification_failure_still_issues(self, services, confirmed_admin, confirmation_rows):
        services.notifier.fail = True
        receipt = services.password_reset.forgot_password("alice@x.com")
        assert receipt.notified is False
        assert len(confirmation_rows(services.store, PrincipalKind.ADMIN, confirmed_admin.id)) == 2


class TestResetPassword:
    def test_mismatch_changes_nothing(self, services, confirmed_admin):
        services.password_reset.forgot_password("alice@x.com")
        token = services.notifier.last_token()
        with pytest.raises(PasswordMismatchError):
            services.password_reset.reset_password(_reset(token, "new-secret-1", "new-secret-2"))

        admin = services.store.find_by_username(PrincipalKind.ADMIN, "alice")
        assert admin.hashed_password == confirmed_admin.hashed_password
        assert not services.confirmations.lookup(token).consumed

    def test_applied_then_login_with_new_password(self, services, confirmed_admin):
        services.password_reset.forgot_password("alice@x.com")
        token = services.notifier.last_token()

        assert services.password_reset.reset_password(_reset(token)) is ResetOutcome.APPLIED
        assert services.authentication.login("alice", "new-secret-1").username == "alice"
        with pytest.raises(InvalidCredentialError):
            services.authentication.login("alice", "pw1-secret")

    def test_replay_is_noop(self, services, confirmed_admin):
        services.password_reset.forgot_password("alice@x.com")
        token = services.notifier.last_token()
        services.password_reset.reset_password(_reset(token))
        applied_hash = services.store.find_by_username(PrincipalKind.ADMIN, "alice").hashed_password

        outcome = services.password_reset.reset_password(_reset(token, "other-secret-9"))
        assert outcome is ResetOutcome.ALREADY_APPLIED
        assert services.store.find_by_username(PrincipalKind.ADMIN, "alice").hashed_password == applied_hash

    def test_unknown_email(self, services, confirmed_admin):
        services.password_reset.forgot_password("alice@x.com")
        with pytest.raises(PrincipalNotFoundError):
            services.password_reset.reset_password(_reset(services.notifier.last_token(), email="nobody@x.com"))

    def test_unknown_token(self, services, confirmed_admin):
        with pytest.raises(InvalidOrExpiredTokenError):
            services.password_reset.reset_password(_reset("made-up"))

    def test_expired_token(self, services, confirmed_admin):
        services.password_reset.forgot_password("alice@x.com")
        token = services.notifier.last_token()
        services.clock.advance(minutes=15)
        with pytest.raises(InvalidOrExpiredTokenError):
            services.password_reset.reset_password(_reset(token))

    def test_confirmation_token_rejected(self, services, admin_form):
        services.registration.register_admin(admin_form())
        token = services.notifier.last_token()
        with pytest.raises(InvalidOrExpiredTokenError):
            services.password_reset.reset_password(_reset(token))

    def test_token_for_other_account_rejected(self, services, confirmed_admin, admin_form):
        services.registration.register_admin(admin_form(username="bob", email="bob@x.com"))
        services.registration.confirm_account(services.notifier.last_token())
        services.password_reset.forgot_password("bob@x.com")
        bob_token = services.notifier.last_token()

        with pytest.raises(InvalidOrExpiredTokenError):
            services.password_reset.reset_password(_reset(bob_token, email="alice@x.com"))
        assert not services.confirmations.lookup(bob_token).consumed

    def test_user_reset(self, services, confirmed_admin, user_form):
        services.registration.register_user("alice", user_form())
        services.password_reset.forgot_password("eve@x.com", PrincipalKind.USER)
        token = services.notifier.last_token()

        outcome = services.password_reset.reset_password(_reset(token, email="eve@x.com"), PrincipalKind.USER)
        assert outcome is ResetOutcome.APPLIED
        assert services.authentication.login("eve", "new-secret-1", PrincipalKind.USER).username == "eve"
        assert services.authentication.login("alice", "pw1-secret").username == "alice"

    def test_unhashable_password_leaves_token_usable(self, services, confirmed_admin, monkeypatch):
        services.password_reset.forgot_password("alice@x.com")
        token = services.notifier.last_token()

        def reject(plaintext):
            raise ValueError("password cannot be longer than 72 bytes")

        monkeypatch.setattr(services.hasher, "hash", reject)
        with pytest.raises(ValueError):
            services.password_reset.reset_password(_reset(token, "p" * 100))
        assert not services.confirmations.lookup(token).consumed

        monkeypatch.undo()
        assert services.password_reset.reset_password(_reset(token)) is ResetOutcome.APPLIED

    def test_failed_write_leaves_token_usable(self, services, confirmed_admin, monkeypatch):
        services.password_reset.forgot_password("alice@x.com")
        token = services.notifier.last_token()

        def fail(principal, conn=None):
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(services.store, "save", fail)
        with pytest.raises(RuntimeError):
            services.password_reset.reset_password(_reset(token))
        assert not services.confirmations.lookup(token).consumed

        monkeypatch.undo()
        assert services.password_reset.reset_password(_reset(token)) is ResetOutcome.APPLIED
        assert services.authentication.login("alice", "new-secret-1").username == "alice"
