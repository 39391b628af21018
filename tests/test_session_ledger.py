"""Unit tests for SessionTokenLedger in auth/ledgers.py.

Covers:
- record() stores a valid BEARER token for the principal
- revoke_all_valid() flips every valid token and reports the count (0 is fine)
- rotate() leaves exactly one valid token and keeps the history
- resolve()/is_valid() reject revoked, unknown and forged tokens
- revoke() invalidates a single token
- Concurrent logins for one principal never leave two valid tokens
- PrincipalLocks serializes one principal and forgets released locks
"""

from __future__ import annotations

import threading

import pytest

from auth.ledgers import PrincipalLocks, SessionTokenLedger
from auth.models import Admin, PrincipalClaim, PrincipalKind
from auth.store import AuthStore
from auth.tokens import JwtSigner

SECRET = "k" * 32


def _admin(store: AuthStore, username: str = "alice") -> Admin:
    return store.save(
        Admin(
            username=username,
            email=f"{username}@x.com",
            hashed_password="h",
            roles=frozenset({store.find_by_name("ADMIN")}),
            enabled=True,
        )
    )


def _mint(signer: JwtSigner, principal):
    return lambda: signer.generate(PrincipalClaim(principal.username, principal.kind))


class TestRecordAndRevoke:
    def test_record_creates_valid_bearer(self, store):
        ledger = SessionTokenLedger(store, JwtSigner(SECRET))
        admin = _admin(store)
        recorded = ledger.record(admin, "value-1")
        assert recorded.id is not None
        assert recorded.token_type == "BEARER"
        assert recorded.is_valid
        assert recorded.principal_id == admin.id

    def test_revoke_all_valid_with_none(self, store):
        ledger = SessionTokenLedger(store, JwtSigner(SECRET))
        assert ledger.revoke_all_valid(_admin(store)) == 0

    def test_revoke_all_valid_flips_each(self, store):
        ledger = SessionTokenLedger(store, JwtSigner(SECRET))
        admin = _admin(store)
        ledger.record(admin, "v1")
        ledger.record(admin, "v2")
        assert ledger.revoke_all_valid(admin) == 2
        assert all(t.expired and t.revoked for t in ledger.tokens_for(admin))

    def test_revoke_all_valid_scoped_to_principal(self, store):
        ledger = SessionTokenLedger(store, JwtSigner(SECRET))
        alice, bob = _admin(store, "alice"), _admin(store, "bob")
        ledger.record(alice, "a1")
        ledger.record(bob, "b1")
        ledger.revoke_all_valid(alice)
        assert ledger.lookup("b1").is_valid


class TestRotate:
    def test_rotate_leaves_single_valid_token(self, store):
        signer = JwtSigner(SECRET)
        ledger = SessionTokenLedger(store, signer)
        admin = _admin(store)

        t1 = ledger.rotate(admin, _mint(signer, admin))
        t2 = ledger.rotate(admin, _mint(signer, admin))

        assert t1.token != t2.token
        assert not ledger.is_valid(t1.token)
        assert ledger.is_valid(t2.token)
        history = ledger.tokens_for(admin)
        assert len(history) == 2
        assert [t.is_valid for t in history] == [False, True]

    def test_rotate_rolls_back_when_mint_fails(self, store):
        signer = JwtSigner(SECRET)
        ledger = SessionTokenLedger(store, signer)
        admin = _admin(store)
        t1 = ledger.rotate(admin, _mint(signer, admin))

        def broken():
            raise RuntimeError("signer down")

        with pytest.raises(RuntimeError):
            ledger.rotate(admin, broken)
        assert ledger.is_valid(t1.token)


class TestResolve:
    def test_resolve_returns_owner(self, store):
        signer = JwtSigner(SECRET)
        ledger = SessionTokenLedger(store, signer)
        admin = _admin(store)
        token = ledger.rotate(admin, _mint(signer, admin)).token
        assert ledger.resolve(token).username == "alice"

    def test_unrecorded_signed_token_rejected(self, store):
        signer = JwtSigner(SECRET)
        ledger = SessionTokenLedger(store, signer)
        admin = _admin(store)
        assert not ledger.is_valid(_mint(signer, admin)())

    def test_recorded_but_unsigned_token_rejected(self, store):
        ledger = SessionTokenLedger(store, JwtSigner(SECRET))
        admin = _admin(store)
        ledger.record(admin, "opaque")
        assert not ledger.is_valid("opaque")

    def test_claim_for_other_principal_rejected(self, store):
        signer = JwtSigner(SECRET)
        ledger = SessionTokenLedger(store, signer)
        alice, bob = _admin(store, "alice"), _admin(store, "bob")
        # A token naming bob recorded against alice does not authenticate anyone.
        ledger.record(alice, _mint(signer, bob)())
        assert all(not ledger.is_valid(t.token) for t in ledger.tokens_for(alice))

    def test_revoke_single(self, store):
        signer = JwtSigner(SECRET)
        ledger = SessionTokenLedger(store, signer)
        admin = _admin(store)
        token = ledger.rotate(admin, _mint(signer, admin)).token
        assert ledger.revoke(token) is True
        assert ledger.revoke(token) is False
        assert ledger.resolve(token) is None


class TestConcurrentLogins:
    def test_parallel_rotations_leave_one_valid(self, tmp_path):
        """Eight threads rotate the same principal; exactly one token survives."""
        store = AuthStore(f"sqlite:///{tmp_path / 'concurrency.db'}")
        store.ensure_roles(["ADMIN"])
        signer = JwtSigner(SECRET)
        ledger = SessionTokenLedger(store, signer, PrincipalLocks())
        admin = _admin(store)

        barrier = threading.Barrier(8)
        errors: list[BaseException] = []

        def worker():
            try:
                barrier.wait()
                ledger.rotate(admin, _mint(signer, admin))
            except BaseException as exc:  # noqa: BLE001 -- surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        history = ledger.tokens_for(admin)
        assert len(history) == 8
        assert sum(1 for t in history if t.is_valid) == 1
        store.close()


class TestPrincipalLocks:
    def test_entry_dropped_once_released(self):
        locks = PrincipalLocks()
        with locks.hold(PrincipalKind.ADMIN, 1):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_same_principal_shares_lock_while_held(self):
        locks = PrincipalLocks()
        entered = threading.Event()
        order: list[str] = []

        def second():
            with locks.hold(PrincipalKind.ADMIN, 1):
                order.append("second")
            entered.set()

        with locks.hold(PrincipalKind.ADMIN, 1):
            t = threading.Thread(target=second)
            t.start()
            assert not entered.wait(timeout=0.2)
            order.append("first")
        t.join(timeout=5)
        assert order == ["first", "second"]
        assert len(locks) == 0

    def test_ledger_keeps_given_registry(self, store):
        locks = PrincipalLocks()
        signer = JwtSigner(SECRET)
        ledger = SessionTokenLedger(store, signer, locks)
        assert ledger._locks is locks
