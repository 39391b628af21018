"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. AuthStore is the repository for principals,
roles and both token tables; the _row_to_* functions are the mappers. Ledgers
and flows never touch SQL directly.

AuthStore satisfies two collaborator contracts from auth/protocols.py:
CredentialStore (admins and users, two independent collections selected by
PrincipalKind) and RoleCatalog. The token-table methods are the ledgers'
persistence; they take an optional conn so a ledger can run several of them
inside one transaction (see SessionTokenLedger.rotate).

Security:
  All queries use bound parameters. No f-strings in SQL.

  Token rows are never deleted. Revocation and consumption are column
  updates, so the tables double as the revocation list.

Schema notes:
  principal_roles is keyed by (principal_kind, principal_id) rather than a
  foreign key because admins and users live in separate tables.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateCredentialError
from auth.models import (
    Admin,
    ConfirmationToken,
    Principal,
    PrincipalKind,
    Role,
    SessionToken,
    TokenPurpose,
    User,
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_admins = Table(
    "admins",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("phone_number", String(32)),
    Column("enabled", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("full_name", String(200), nullable=False, server_default=""),
    Column("phone_number", String(32)),
    Column("job_title", String(100)),
    Column("department", String(100)),
    Column("created_under", Integer),  # owning admins.id
    Column("enabled", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
)

_principal_roles = Table(
    "principal_roles",
    metadata,
    Column("principal_kind", String(10), nullable=False),
    Column("principal_id", Integer, nullable=False),
    Column("role_id", Integer, nullable=False),
    UniqueConstraint("principal_kind", "principal_id", "role_id", name="uq_principal_role"),
)

_session_tokens = Table(
    "session_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", Text, nullable=False, unique=True),
    Column("token_type", String(16), nullable=False, server_default="BEARER"),
    Column("expired", Integer, nullable=False, server_default="0"),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("principal_kind", String(10), nullable=False),
    Column("principal_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_session_tokens_owner_state", "principal_kind", "principal_id", "expired", "revoked"),
)

_confirmation_tokens = Table(
    "confirmation_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("purpose", String(20), nullable=False),
    Column("principal_kind", String(10), nullable=False),
    Column("principal_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
)

_TABLES: dict[PrincipalKind, Table] = {
    PrincipalKind.ADMIN: _admins,
    PrincipalKind.USER: _users,
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    # Naive values are treated as UTC so comparisons with aware "now" work.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for principals, roles, session tokens and confirmation tokens.

    Usage:
        store = AuthStore("sqlite:///keyward.db")
        store.ensure_roles(["ADMIN", "USER"])
        admin = store.save(Admin(username="alice", email="a@x.com", hashed_password=h))
        store.find_by_username(PrincipalKind.ADMIN, "alice")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    def transaction(self):
        """Return a context manager yielding a Connection inside BEGIN/COMMIT.

        Rolls back if the block raises. Pass the connection to the methods
        below as conn= to group them into one atomic unit.
        """
        return self.engine.begin()

    @contextmanager
    def _unit(self, conn: Optional[Connection]) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # Roles (RoleCatalog)
    # ------------------------------------------------------------------

    def find_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return Role(name=row.name, id=row.id) if row is not None else None

    def ensure_roles(self, names: Iterable[str]) -> list[Role]:
        """Insert any missing role names. Idempotent -- safe on every startup."""
        with self.engine.begin() as conn:
            existing = {r.name for r in conn.execute(select(_roles.c.name)).fetchall()}
            for name in names:
                if name not in existing:
                    conn.execute(_roles.insert().values(name=name))
                    existing.add(name)
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [Role(name=r.name, id=r.id) for r in rows]

    # ------------------------------------------------------------------
    # Principals (CredentialStore)
    # ------------------------------------------------------------------

    def find_by_username(self, kind: PrincipalKind, username: str) -> Principal | None:
        """Exact, case-sensitive username lookup in one collection."""
        table = _TABLES[kind]
        return self._find_one(kind, table.c.username == username)

    def find_by_email(self, kind: PrincipalKind, email: str) -> Principal | None:
        table = _TABLES[kind]
        return self._find_one(kind, table.c.email == email)

    def find_by_id(self, kind: PrincipalKind, principal_id: int, conn: Optional[Connection] = None) -> Principal | None:
        table = _TABLES[kind]
        return self._find_one(kind, table.c.id == principal_id, conn=conn)

    def lock_principal(self, kind: PrincipalKind, principal_id: int, conn: Connection) -> None:
        """Serialize writers for one principal until conn's transaction ends.

        PostgreSQL/MySQL: SELECT ... FOR UPDATE on the principal row.

        SQLite has no row locks and SQLAlchemy drops FOR UPDATE there, while
        pysqlite does not open a transaction before a SELECT. A no-op UPDATE
        of the row makes pysqlite emit BEGIN and takes the database write
        lock, so a second process blocks here until this one commits. This
        must be the first statement of the transaction.
        """
        table = _TABLES[kind]
        if conn.dialect.name == "sqlite":
            conn.execute(table.update().where(table.c.id == principal_id).values(id=table.c.id))
            return
        conn.execute(select(table.c.id).where(table.c.id == principal_id).with_for_update()).fetchone()

    def save(self, principal: Principal, conn: Optional[Connection] = None) -> Principal:
        """Insert when principal.id is None, otherwise update. Returns the stored record.

        Raises DuplicateCredentialError when the username or email collides
        with another record in the same collection.
        """
        kind = principal.kind
        table = _TABLES[kind]
        values = _principal_values(principal)
        try:
            with self._unit(conn) as unit:
                if principal.id is None:
                    values["created_at"] = _now_iso()
                    result = unit.execute(table.insert().values(**values))
                    principal_id = result.inserted_primary_key[0]
                else:
                    principal_id = principal.id
                    unit.execute(table.update().where(table.c.id == principal_id).values(**values))
                self._replace_roles(unit, kind, principal_id, principal.roles)
                stored = self._find_one(kind, table.c.id == principal_id, conn=unit)
        except IntegrityError as exc:
            raise DuplicateCredentialError("Username or email already exists.") from exc
        return stored

    def save_all(self, principals: Iterable[Principal]) -> list[Principal]:
        with self.engine.begin() as conn:
            return [self.save(p, conn=conn) for p in principals]

    def list_users_created_under(self, admin_id: int) -> list[User]:
        """Return every User provisioned by the given admin, ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(_users.c.created_under == admin_id).order_by(_users.c.username)
            ).fetchall()
            return [_row_to_principal(PrincipalKind.USER, r, self._load_roles(conn, PrincipalKind.USER, r.id)) for r in rows]

    def _find_one(self, kind: PrincipalKind, clause, conn: Optional[Connection] = None) -> Principal | None:
        table = _TABLES[kind]
        with self._read(conn) as unit:
            row = unit.execute(table.select().where(clause)).fetchone()
            if row is None:
                return None
            return _row_to_principal(kind, row, self._load_roles(unit, kind, row.id))

    @contextmanager
    def _read(self, conn: Optional[Connection]) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.engine.connect() as own:
            yield own

    def _load_roles(self, conn: Connection, kind: PrincipalKind, principal_id: int) -> frozenset[Role]:
        rows = conn.execute(
            select(_roles.c.id, _roles.c.name)
            .select_from(_principal_roles.join(_roles, _principal_roles.c.role_id == _roles.c.id))
            .where((_principal_roles.c.principal_kind == kind.value) & (_principal_roles.c.principal_id == principal_id))
        ).fetchall()
        return frozenset(Role(name=r.name, id=r.id) for r in rows)

    def _replace_roles(self, conn: Connection, kind: PrincipalKind, principal_id: int, roles: frozenset[Role]) -> None:
        owner = (_principal_roles.c.principal_kind == kind.value) & (_principal_roles.c.principal_id == principal_id)
        conn.execute(_principal_roles.delete().where(owner))
        for role in roles:
            role_id = role.id
            if role_id is None:
                role_id = conn.execute(select(_roles.c.id).where(_roles.c.name == role.name)).scalar()
            if role_id is None:
                continue
            conn.execute(
                _principal_roles.insert().values(principal_kind=kind.value, principal_id=principal_id, role_id=role_id)
            )

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def insert_session_token(self, token: SessionToken, conn: Optional[Connection] = None) -> SessionToken:
        created_at = _now_iso()
        with self._unit(conn) as unit:
            result = unit.execute(
                _session_tokens.insert().values(
                    token=token.token,
                    token_type=token.token_type,
                    expired=1 if token.expired else 0,
                    revoked=1 if token.revoked else 0,
                    principal_kind=token.principal_kind.value,
                    principal_id=token.principal_id,
                    created_at=created_at,
                )
            )
            token_id = result.inserted_primary_key[0]
        return SessionToken(
            id=token_id,
            token=token.token,
            token_type=token.token_type,
            expired=token.expired,
            revoked=token.revoked,
            principal_kind=token.principal_kind,
            principal_id=token.principal_id,
            created_at=created_at,
        )

    def find_valid_session_tokens(
        self, kind: PrincipalKind, principal_id: int, conn: Optional[Connection] = None
    ) -> list[SessionToken]:
        """Return tokens for the principal with expired=0 and revoked=0."""
        t = _session_tokens
        with self._read(conn) as unit:
            rows = unit.execute(
                t.select()
                .where(
                    (t.c.principal_kind == kind.value)
                    & (t.c.principal_id == principal_id)
                    & (t.c.expired == 0)
                    & (t.c.revoked == 0)
                )
                .order_by(t.c.id)
            ).fetchall()
        return [_row_to_session_token(r) for r in rows]

    def mark_session_tokens_revoked(self, token_ids: list[int], conn: Optional[Connection] = None) -> int:
        """Flip expired and revoked on the given rows. Returns the number updated."""
        if not token_ids:
            return 0
        with self._unit(conn) as unit:
            result = unit.execute(
                _session_tokens.update().where(_session_tokens.c.id.in_(token_ids)).values(expired=1, revoked=1)
            )
            updated = result.rowcount
        return updated

    def get_session_token(self, token: str) -> SessionToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_session_tokens.select().where(_session_tokens.c.token == token)).fetchone()
        return _row_to_session_token(row) if row is not None else None

    def list_session_tokens(self, kind: PrincipalKind, principal_id: int) -> list[SessionToken]:
        """Full token history for one principal, oldest first."""
        t = _session_tokens
        with self.engine.connect() as conn:
            rows = conn.execute(
                t.select().where((t.c.principal_kind == kind.value) & (t.c.principal_id == principal_id)).order_by(t.c.id)
            ).fetchall()
        return [_row_to_session_token(r) for r in rows]

    # ------------------------------------------------------------------
    # Confirmation tokens
    # ------------------------------------------------------------------

    def insert_confirmation_token(self, token: ConfirmationToken) -> ConfirmationToken:
        with self.engine.begin() as conn:
            result = conn.execute(
                _confirmation_tokens.insert().values(
                    token=token.token,
                    purpose=token.purpose.value,
                    principal_kind=token.principal_kind.value,
                    principal_id=token.principal_id,
                    created_at=token.created_at.isoformat(),
                    expires_at=token.expires_at.isoformat(),
                    consumed_at=token.consumed_at.isoformat() if token.consumed_at else None,
                )
            )
            token_id = result.inserted_primary_key[0]
        return ConfirmationToken(
            id=token_id,
            token=token.token,
            purpose=token.purpose,
            principal_kind=token.principal_kind,
            principal_id=token.principal_id,
            created_at=token.created_at,
            expires_at=token.expires_at,
            consumed_at=token.consumed_at,
        )

    def get_confirmation_token(self, token: str, conn: Optional[Connection] = None) -> ConfirmationToken | None:
        with self._read(conn) as unit:
            row = unit.execute(_confirmation_tokens.select().where(_confirmation_tokens.c.token == token)).fetchone()
        return _row_to_confirmation_token(row) if row is not None else None

    def mark_confirmation_consumed(
        self, token_id: int, consumed_at: datetime, conn: Optional[Connection] = None
    ) -> bool:
        """Stamp consumed_at once. Returns False if the row was already consumed or is missing.

        Pass conn= to make the claim commit or roll back with the state
        change it guards.
        """
        t = _confirmation_tokens
        with self._unit(conn) as unit:
            result = unit.execute(
                t.update().where((t.c.id == token_id) & (t.c.consumed_at.is_(None))).values(consumed_at=consumed_at.isoformat())
            )
            updated = result.rowcount
        return updated > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _principal_values(principal: Principal) -> dict:
    values = {
        "username": principal.username,
        "email": principal.email,
        "hashed_password": principal.hashed_password,
        "phone_number": principal.phone_number,
        "enabled": 1 if principal.enabled else 0,
    }
    if isinstance(principal, Admin):
        values.update(first_name=principal.first_name, last_name=principal.last_name)
    elif isinstance(principal, User):
        values.update(
            full_name=principal.full_name,
            job_title=principal.job_title,
            department=principal.department,
            created_under=principal.created_under,
        )
    return values


def _row_to_principal(kind: PrincipalKind, row, roles: frozenset[Role]) -> Principal:
    if kind is PrincipalKind.ADMIN:
        return Admin(
            id=row.id,
            username=row.username,
            email=row.email,
            hashed_password=row.hashed_password,
            first_name=row.first_name,
            last_name=row.last_name,
            phone_number=row.phone_number,
            roles=roles,
            enabled=bool(row.enabled),
            created_at=row.created_at,
        )
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        full_name=row.full_name,
        phone_number=row.phone_number,
        job_title=row.job_title,
        department=row.department,
        created_under=row.created_under,
        roles=roles,
        enabled=bool(row.enabled),
        created_at=row.created_at,
    )


def _row_to_session_token(row) -> SessionToken:
    return SessionToken(
        id=row.id,
        token=row.token,
        token_type=row.token_type,
        expired=bool(row.expired),
        revoked=bool(row.revoked),
        principal_kind=PrincipalKind(row.principal_kind),
        principal_id=row.principal_id,
        created_at=row.created_at,
    )


def _row_to_confirmation_token(row) -> ConfirmationToken:
    return ConfirmationToken(
        id=row.id,
        token=row.token,
        purpose=TokenPurpose(row.purpose),
        principal_kind=PrincipalKind(row.principal_kind),
        principal_id=row.principal_id,
        created_at=_parse_ts(row.created_at),
        expires_at=_parse_ts(row.expires_at),
        consumed_at=_parse_ts(row.consumed_at),
    )
