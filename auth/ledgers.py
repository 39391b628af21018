"""
auth/ledgers.py -- Session and confirmation token bookkeeping.

SessionTokenLedger
  Every session token ever issued is a row. A token is "valid" while both
  expired and revoked are 0. Login rotates: all valid rows for the principal
  are flipped to expired+revoked and one new valid row is inserted, inside one
  transaction and under a per-principal lock. The table is the revocation
  list; there is no separate blacklist.

ConfirmationTokenLedger
  One-time tokens for account confirmation and password reset. Each token is
  bound to the purpose it was issued for. consume() validates and returns the
  owner but does not mark anything. The flow then claims the token with
  mark_consumed(), a conditional update that only one caller can win, and
  applies the purpose's state change in the same transaction. Rows are kept
  after use.

Concurrency:
  PrincipalLocks hands out one threading.Lock per (kind, principal_id), so
  two logins for the same account serialize while logins for different
  accounts never contend in-process. Across processes (several uvicorn
  workers) AuthStore.lock_principal() carries it: a row lock on
  PostgreSQL/MySQL, the database write lock on SQLite.
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from auth.errors import InvalidOrExpiredTokenError
from auth.models import ConfirmationToken, Principal, PrincipalKind, SessionToken, TokenPurpose
from auth.protocols import TokenSigner
from auth.store import AuthStore
from auth.tokens import new_token_value

logger = logging.getLogger("keyward.auth")


class PrincipalLocks:
    """Registry of per-principal locks.

    Entries are weak: a lock lives only while some thread holds or waits on
    it, so the map never grows past the number of in-flight logins.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[tuple[PrincipalKind, int], threading.Lock] = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, kind: PrincipalKind, principal_id: int) -> Iterator[None]:
        key = (kind, principal_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
        with lock:
            yield


class SessionTokenLedger:
    def __init__(self, store: AuthStore, signer: TokenSigner, locks: PrincipalLocks | None = None) -> None:
        self._store = store
        self._signer = signer
        self._locks = locks if locks is not None else PrincipalLocks()

    def revoke_all_valid(self, principal: Principal, conn=None) -> int:
        """Mark every currently valid token for principal expired+revoked.

        Returns how many were revoked; zero is not an error.
        """
        valid = self._store.find_valid_session_tokens(principal.kind, principal.id, conn=conn)
        if not valid:
            return 0
        return self._store.mark_session_tokens_revoked([t.id for t in valid], conn=conn)

    def record(self, principal: Principal, token_value: str, conn=None) -> SessionToken:
        """Persist a new valid BEARER token for principal."""
        return self._store.insert_session_token(
            SessionToken(token=token_value, principal_kind=principal.kind, principal_id=principal.id),
            conn=conn,
        )

    def rotate(self, principal: Principal, mint: Callable[[], str]) -> SessionToken:
        """Revoke every valid token, mint a new one and record it -- atomically.

        The per-principal lock serializes concurrent logins for the same
        account in this process; the transaction makes the revoke and the
        insert commit or roll back together.
        """
        with self._locks.hold(principal.kind, principal.id):
            with self._store.transaction() as conn:
                self._store.lock_principal(principal.kind, principal.id, conn)
                revoked = self.revoke_all_valid(principal, conn=conn)
                recorded = self.record(principal, mint(), conn=conn)
        logger.info(
            "Session rotated for %s %s (revoked=%d, token_id=%s)",
            principal.kind.value,
            principal.username,
            revoked,
            recorded.id,
        )
        return recorded

    def lookup(self, token_value: str) -> SessionToken | None:
        return self._store.get_session_token(token_value)

    def is_valid(self, token_value: str) -> bool:
        """True iff the token is recorded, not expired, not revoked, and its signature and identity check out."""
        return self.resolve(token_value) is not None

    def resolve(self, token_value: str) -> Principal | None:
        """Return the owning principal of a valid token, else None."""
        recorded = self._store.get_session_token(token_value)
        if recorded is None or not recorded.is_valid:
            return None
        claim = self._signer.verify(token_value)
        if claim is None or claim.kind is not recorded.principal_kind:
            return None
        owner = self._store.find_by_id(recorded.principal_kind, recorded.principal_id)
        if owner is None or owner.username != claim.username:
            return None
        return owner

    def revoke(self, token_value: str) -> bool:
        """Revoke one token (logout). False if it was unknown or already invalid."""
        recorded = self._store.get_session_token(token_value)
        if recorded is None or not recorded.is_valid:
            return False
        return self._store.mark_session_tokens_revoked([recorded.id]) > 0

    def tokens_for(self, principal: Principal) -> list[SessionToken]:
        return self._store.list_session_tokens(principal.kind, principal.id)


class ConfirmationTokenLedger:
    def __init__(self, store: AuthStore, ttl: timedelta = timedelta(minutes=15), clock=None) -> None:
        self._store = store
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue(self, principal: Principal, purpose: TokenPurpose = TokenPurpose.CONFIRMATION) -> ConfirmationToken:
        now = self._clock()
        token = self._store.insert_confirmation_token(
            ConfirmationToken(
                token=new_token_value(),
                purpose=purpose,
                principal_kind=principal.kind,
                principal_id=principal.id,
                created_at=now,
                expires_at=now + self.ttl,
            )
        )
        logger.info(
            "Issued %s token for %s %s (expires %s)",
            purpose.value,
            principal.kind.value,
            principal.username,
            token.expires_at.isoformat(),
        )
        return token

    def lookup(self, token_value: str) -> ConfirmationToken | None:
        return self._store.get_confirmation_token(token_value)

    def consume(self, token_value: str, purpose: TokenPurpose) -> Principal:
        """Validate token_value for purpose and return its owner.

        Raises InvalidOrExpiredTokenError if the token is unknown, expired,
        already consumed, issued for a different purpose, or its owner no
        longer exists. Does not mark the token -- see mark_consumed().
        """
        token = self._store.get_confirmation_token(token_value)
        if token is None:
            raise InvalidOrExpiredTokenError("Token is invalid or has expired.")
        if token.purpose is not purpose:
            logger.info("Rejected %s token presented for %s", token.purpose.value, purpose.value)
            raise InvalidOrExpiredTokenError("Token is invalid or has expired.")
        if token.consumed:
            raise InvalidOrExpiredTokenError("Token has already been used.")
        if token.is_expired(self._clock()):
            raise InvalidOrExpiredTokenError("Token is invalid or has expired.")
        owner = self._store.find_by_id(token.principal_kind, token.principal_id)
        if owner is None:
            raise InvalidOrExpiredTokenError("Token is invalid or has expired.")
        return owner

    def mark_consumed(self, token_value: str, conn=None) -> bool:
        """Stamp the token as used. Returns False if it was already consumed.

        With conn= the claim joins the caller's transaction, so it is undone
        if the state change it guards fails.
        """
        token = self._store.get_confirmation_token(token_value, conn=conn)
        if token is None:
            return False
        return self._store.mark_confirmation_consumed(token.id, self._clock(), conn=conn)
