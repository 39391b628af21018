"""
auth/protocols.py -- Collaborator contracts the ledgers and flows depend on.

The flows never import a concrete adapter. api/main.py wires the shipped
adapters (auth.store.AuthStore, auth.tokens.BcryptHasher / JwtSigner,
auth.notifier.SmtpNotifier / LogNotifier); tests substitute doubles.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable
from contextlib import AbstractContextManager
from typing import Any, Protocol, runtime_checkable

from auth.models import Principal, PrincipalClaim, PrincipalKind, Role, User


@runtime_checkable
class CredentialStore(Protocol):
    """Admin and User persistence. Each kind is an independent collection."""

    def find_by_username(self, kind: PrincipalKind, username: str) -> Principal | None: ...

    def find_by_email(self, kind: PrincipalKind, email: str) -> Principal | None: ...

    def find_by_id(self, kind: PrincipalKind, principal_id: int) -> Principal | None: ...

    def save(self, principal: Principal, conn: Any = None) -> Principal:
        """Upsert by id: insert when id is None, otherwise update. Returns the stored record.

        conn is a handle from transaction(); without one the write commits alone.
        """
        ...

    def save_all(self, principals: Iterable[Principal]) -> list[Principal]: ...

    def list_users_created_under(self, admin_id: int) -> list[User]: ...

    def transaction(self) -> AbstractContextManager[Any]:
        """Open one unit of work; the yielded handle is passed back as conn=."""
        ...


@runtime_checkable
class RoleCatalog(Protocol):
    def find_by_name(self, name: str) -> Role | None: ...


@runtime_checkable
class Hasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, digest: str) -> bool: ...


@runtime_checkable
class TokenSigner(Protocol):
    def generate(self, claim: PrincipalClaim) -> str: ...

    def verify(self, token: str) -> PrincipalClaim | None:
        """Return the embedded claim, or None for any bad signature, expiry or shape."""
        ...


@runtime_checkable
class Notifier(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> None:
        """Deliver one message. Raises auth.errors.NotificationError on failure."""
        ...
