"""
auth/models.py -- Domain dataclasses for credential and session entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence,
ledgers own token policy, flows own orchestration.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar


class PrincipalKind(str, Enum):
    """Which principal collection a record lives in."""

    ADMIN = "admin"
    USER = "user"


class TokenPurpose(str, Enum):
    CONFIRMATION = "confirmation"
    PASSWORD_RESET = "password_reset"


class ResetOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


@dataclass(frozen=True)
class Role:
    """Immutable capability tag, identified by name ("ADMIN", "USER")."""

    name: str
    id: int | None = field(default=None, compare=False)


@dataclass
class Principal:
    """Shared shape of every identity that can authenticate.

    id is None before the record is written to the database. roles is an
    owned frozenset of Role values, never a shared live reference.
    """

    username: str
    email: str
    hashed_password: str
    phone_number: str | None = None
    roles: frozenset[Role] = frozenset()
    enabled: bool = False
    id: int | None = None
    created_at: str | None = None

    kind: ClassVar[PrincipalKind]

    @property
    def role_names(self) -> list[str]:
        return sorted(r.name for r in self.roles)


@dataclass
class Admin(Principal):
    """Self-registered administrator. Disabled until the email is confirmed."""

    first_name: str = ""
    last_name: str = ""

    kind = PrincipalKind.ADMIN


@dataclass
class User(Principal):
    """Employee account provisioned by an Admin.

    created_under is the owning Admin's id. Users are enabled at creation
    because the provisioning admin vouches for them.
    """

    full_name: str = ""
    job_title: str | None = None
    department: str | None = None
    created_under: int | None = None
    enabled: bool = True

    kind = PrincipalKind.USER


@dataclass
class SessionToken:
    """A signed bearer credential recorded at login.

    Rows are append-only: revocation flips expired/revoked, nothing is deleted.
    """

    token: str
    principal_kind: PrincipalKind
    principal_id: int
    token_type: str = "BEARER"
    expired: bool = False
    revoked: bool = False
    id: int | None = None
    created_at: str | None = None

    @property
    def is_valid(self) -> bool:
        return not self.expired and not self.revoked


@dataclass
class ConfirmationToken:
    """One-time, time-limited token for account confirmation or password reset."""

    token: str
    purpose: TokenPurpose
    principal_kind: PrincipalKind
    principal_id: int
    created_at: datetime
    expires_at: datetime
    consumed_at: datetime | None = None
    id: int | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass(frozen=True)
class PrincipalClaim:
    """Identity carried inside a signed session token."""

    username: str
    kind: PrincipalKind


# ---------------------------------------------------------------------------
# Flow inputs
# ---------------------------------------------------------------------------


@dataclass
class AdminRegistration:
    first_name: str
    last_name: str
    username: str
    email: str
    password: str
    phone_number: str | None = None


@dataclass
class UserRegistration:
    full_name: str
    username: str
    email: str
    password: str
    phone_number: str | None = None
    job_title: str | None = None
    department: str | None = None


@dataclass
class PasswordReset:
    email: str
    token: str
    new_password: str
    confirm_password: str


@dataclass
class DetailsUpdate:
    """Mutable profile fields. first_name/last_name apply to admins, full_name to users."""

    email: str
    phone_number: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    full_name: str | None = None


# ---------------------------------------------------------------------------
# Flow results
# ---------------------------------------------------------------------------


@dataclass
class ConfirmationReceipt:
    username: str
    email: str
    first_name: str
    last_name: str
    phone_number: str | None
    status: str
    notified: bool


@dataclass
class ProvisioningReceipt:
    username: str
    email: str
    full_name: str
    phone_number: str | None
    job_title: str | None
    department: str | None
    created_under: int
    status: str
    notified: bool


@dataclass
class SessionReceipt:
    username: str
    token: str
    token_type: str = "BEARER"


@dataclass
class ResetReceipt:
    message: str
    reset_link: str
    notified: bool
