"""
tests/conftest.py -- Shared test fixtures for Keyward.

This module provides:
  - RecordingNotifier / FakeClock: doubles for the notifier and the
    confirmation ledger's clock
  - store / services: an in-memory AuthStore with seeded roles and the flows
    composed around it, for unit tests
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

The DEBUG env var must be set before any api/ import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# CRITICAL: Set DEBUG before any core/api import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from auth.authentication import AuthenticationFlow
from auth.errors import NotificationError
from auth.ledgers import ConfirmationTokenLedger, PrincipalLocks, SessionTokenLedger
from auth.models import AdminRegistration, ConfirmationToken, PrincipalKind, UserRegistration
from auth.password_reset import PasswordResetFlow
from auth.profile import ProfileFlow
from auth.registration import RegistrationFlow
from auth.store import AuthStore, _confirmation_tokens, _row_to_confirmation_token
from auth.tokens import BcryptHasher, JwtSigner

BASE_URL = "http://keyward.test"
TEST_SECRET = "k" * 32

# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------


@dataclass
class SentMessage:
    recipient: str
    subject: str
    body: str


@dataclass
class RecordingNotifier:
    """Notifier double: records every message; raises when fail is True."""

    sent: list[SentMessage] = field(default_factory=list)
    fail: bool = False

    def send(self, recipient: str, subject: str, body: str) -> None:
        if self.fail:
            raise NotificationError("SMTP unavailable")
        self.sent.append(SentMessage(recipient, subject, body))

    def last_token(self) -> str:
        """Extract the token query value from the most recent message's link."""
        body = self.sent[-1].body
        marker = "/confirm?token="
        start = body.index(marker) + len(marker)
        return body[start:].split()[0]


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def admin_request(username: str = "alice", email: str = "alice@x.com", password: str = "pw1-secret") -> AdminRegistration:
    return AdminRegistration(
        first_name="Alice",
        last_name="Admin",
        username=username,
        email=email,
        password=password,
        phone_number="+15550100",
    )


def user_request(username: str = "eve", email: str = "eve@x.com", password: str = "eve-secret") -> UserRegistration:
    return UserRegistration(
        full_name="Eve Employee",
        username=username,
        email=email,
        password=password,
        phone_number="+15550101",
        job_title="Engineer",
        department="Platform",
    )


def build_services(store: AuthStore, notifier: RecordingNotifier, clock: FakeClock | None = None) -> SimpleNamespace:
    """Compose ledgers and flows the same way api.main.wire_services does."""
    hasher = BcryptHasher(rounds=4)
    signer = JwtSigner(TEST_SECRET, expire_seconds=3600)
    sessions = SessionTokenLedger(store, signer, PrincipalLocks())
    confirmations = ConfirmationTokenLedger(store, ttl=timedelta(minutes=15), clock=clock)
    return SimpleNamespace(
        store=store,
        notifier=notifier,
        clock=clock,
        hasher=hasher,
        signer=signer,
        sessions=sessions,
        confirmations=confirmations,
        registration=RegistrationFlow(store, store, hasher, confirmations, notifier, BASE_URL),
        authentication=AuthenticationFlow(store, hasher, signer, sessions),
        password_reset=PasswordResetFlow(store, hasher, confirmations, notifier, BASE_URL),
        profile=ProfileFlow(store),
    )


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:")
    s.ensure_roles(["ADMIN", "USER"])
    yield s
    s.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def admin_form():
    """Builder for AdminRegistration inputs; keyword overrides per test."""
    return admin_request


@pytest.fixture
def user_form():
    return user_request


@pytest.fixture
def make_services():
    return build_services


@pytest.fixture
def confirmation_rows():
    """Reader for every confirmation_tokens row of one principal, oldest first."""

    def read(store: AuthStore, kind: PrincipalKind, principal_id: int) -> list[ConfirmationToken]:
        t = _confirmation_tokens
        with store.engine.connect() as conn:
            rows = conn.execute(
                t.select().where((t.c.principal_kind == kind.value) & (t.c.principal_id == principal_id)).order_by(t.c.id)
            ).fetchall()
        return [_row_to_confirmation_token(r) for r in rows]

    return read


@pytest.fixture
def services(store: AuthStore, notifier: RecordingNotifier, clock: FakeClock) -> SimpleNamespace:
    return build_services(store, notifier, clock)


@pytest.fixture
def confirmed_admin(services: SimpleNamespace):
    """alice/alice@x.com/pw1-secret, registered and confirmed."""
    services.registration.register_admin(admin_request())
    services.registration.confirm_account(services.notifier.last_token())
    services.notifier.sent.clear()
    return services.store.find_by_username(PrincipalKind.ADMIN, "alice")


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, notifier: RecordingNotifier):
    """Return a lifespan that wires the flows around a pre-created test store."""
    from api.main import wire_services
    from core.config import get_settings

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app.state, store, get_settings(), notifier=notifier, hasher=BcryptHasher(rounds=4))
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, RecordingNotifier], None, None]:
    """Yield (client, notifier) for API integration tests.

    Each test module gets its own named in-memory database so modules do not
    see each other's accounts.
    """
    from api.main import app

    db_name = request.module.__name__.rsplit(".", 1)[-1]
    store = AuthStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    store.ensure_roles(["ADMIN", "USER"])
    notifier = RecordingNotifier()

    app.router.lifespan_context = _patch_lifespan(store, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, notifier

    store.close()
