"""
auth/tokens.py -- Password hashing, JWT signing and opaque token generation.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       the principal's username (sub), principal kind, a unique jti and the
       expiry. Verification returns None on any failure -- the session ledger
       and the route layer turn that into "not authenticated".

       The jti claim makes every issued token distinct even when two logins
       for the same principal land in the same second. The session ledger
       keys rows on the token string, so identical strings would collide.

  Passwords: bcrypt directly (no passlib wrapper). DUMMY_DIGEST lets the
       authentication flow run one bcrypt check for unknown usernames so
       response time does not reveal whether a username exists.

  Confirmation / reset tokens: secrets.token_urlsafe(32) gives 256 bits of
       entropy. They are opaque, single-use and expire server-side, so they
       are stored as issued.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.models import PrincipalClaim, PrincipalKind
from core.config import Settings

logger = logging.getLogger("keyward.auth")

_ALGORITHM = "HS256"


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


class BcryptHasher:
    """One-way password hasher backed by bcrypt.

    bcrypt>=5 raises ValueError for passwords longer than 72 bytes. The API
    models reject those with a 422 before a flow ever hashes them.
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds

    def hash(self, plaintext: str) -> str:
        return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plaintext: str, digest: str) -> bool:
        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), digest.encode("utf-8"))
        except ValueError:
            # Malformed digest (e.g. a row written by another system).
            return False


# Computed once at import so the first failed login is not measurably slower
# than later ones.
DUMMY_DIGEST: str = bcrypt.hashpw(b"keyward_timing_dummy", bcrypt.gensalt()).decode("utf-8")


# ---------------------------------------------------------------------------
# Session token signing
# ---------------------------------------------------------------------------


class JwtSigner:
    """HS256 signer for session tokens.

    Usage:
        signer = JwtSigner(secret_key, expire_seconds=3600)
        token = signer.generate(PrincipalClaim("alice", PrincipalKind.ADMIN))
        claim = signer.verify(token)   # PrincipalClaim or None
    """

    def __init__(self, secret_key: str, expire_seconds: int = 3600) -> None:
        self._secret_key = secret_key
        self.expire_seconds = expire_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> JwtSigner:
        return cls(settings.secret_key, settings.token_expire_seconds)

    def generate(self, claim: PrincipalClaim) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": claim.username,
            "kind": claim.kind.value,
            "jti": secrets.token_hex(16),
            "iat": now,
            "exp": now + timedelta(seconds=self.expire_seconds),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> PrincipalClaim | None:
        """Decode and verify a JWT. Returns the identity claim or None on any failure."""
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        username = payload.get("sub")
        kind = payload.get("kind")
        if not username or kind not in {k.value for k in PrincipalKind}:
            return None
        return PrincipalClaim(username=username, kind=PrincipalKind(kind))


# ---------------------------------------------------------------------------
# Opaque one-time tokens
# ---------------------------------------------------------------------------


def new_token_value() -> str:
    """Return a URL-safe random token for confirmation and reset links."""
    return secrets.token_urlsafe(32)
