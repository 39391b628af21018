"""
auth/authentication.py -- Password login, logout and bearer-token resolution.

login() enforces the single-active-session policy: the principal's previous
valid tokens are revoked and the new one recorded in one critical section
(SessionTokenLedger.rotate), so after a successful login exactly one valid
token exists for that principal.

Failure reasons are distinct exception classes for logging, all subclassing
AuthenticationFailedError; api/ renders every one of them identically.

Timing: bcrypt runs on every attempt -- against DUMMY_DIGEST for unknown
usernames and before the enabled check for known ones -- so response time
does not reveal which check failed.
"""

from __future__ import annotations

import logging

from auth.errors import (
    AccountNotEnabledError,
    InvalidCredentialError,
    LoginPrincipalNotFoundError,
)
from auth.ledgers import SessionTokenLedger
from auth.models import Principal, PrincipalClaim, PrincipalKind, SessionReceipt
from auth.protocols import CredentialStore, Hasher, TokenSigner
from auth.tokens import DUMMY_DIGEST

logger = logging.getLogger("keyward.auth")


class AuthenticationFlow:
    def __init__(
        self,
        store: CredentialStore,
        hasher: Hasher,
        signer: TokenSigner,
        sessions: SessionTokenLedger,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._signer = signer
        self._sessions = sessions

    def login(self, username: str, password: str, kind: PrincipalKind = PrincipalKind.ADMIN) -> SessionReceipt:
        principal = self._store.find_by_username(kind, username)
        if principal is None:
            self._hasher.verify(password, DUMMY_DIGEST)
            logger.info("Login failed for %s %r: unknown username", kind.value, username)
            raise LoginPrincipalNotFoundError(f"User not found with username: {username}")

        password_ok = self._hasher.verify(password, principal.hashed_password)
        if not principal.enabled:
            logger.info("Login failed for %s %r: account not enabled", kind.value, username)
            raise AccountNotEnabledError(
                "User account is not enabled. Please check your email to confirm your account."
            )
        if not password_ok:
            logger.info("Login failed for %s %r: bad password", kind.value, username)
            raise InvalidCredentialError("Invalid username or password.")

        claim = PrincipalClaim(username=principal.username, kind=principal.kind)
        session = self._sessions.rotate(principal, lambda: self._signer.generate(claim))
        return SessionReceipt(username=principal.username, token=session.token, token_type=session.token_type)

    def logout(self, token_value: str) -> bool:
        """Revoke the presented token. False if it was not a valid session token."""
        revoked = self._sessions.revoke(token_value)
        if revoked:
            logger.info("Session token revoked on logout")
        return revoked

    def authenticate_token(self, token_value: str, kind: PrincipalKind | None = None) -> Principal:
        """Return the principal owning a valid session token.

        If kind is given, the token must belong to that collection. Raises
        InvalidCredentialError otherwise.
        """
        principal = self._sessions.resolve(token_value)
        if principal is None or (kind is not None and principal.kind is not kind):
            raise InvalidCredentialError("Authentication required.")
        if not principal.enabled:
            raise AccountNotEnabledError("Account is not enabled.")
        return principal
