"""
auth/tokens.py -- Password hashing and revocable session tokens.

Security design decisions:
  Passwords: bcrypt, used directly. The _DUMMY_HASH constant enables timing
       equalization in the login flow so response time does not reveal
       whether a username exists.

  Session tokens: python-jose HS256 JWTs carrying user_id, username, role,
       scopes, expiry and a random "jti". Every issued jti is recorded in the
       sessions table; a token whose row is gone is rejected even if its
       signature and expiry are fine. That is what makes logout, logout-all
       and "revoke every other session after a password change" possible
       with stateless JWTs.

  SECRET_KEY: sourced from core.config.get_settings().

Layer rule: no imports from api/ or cache/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import Session
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("pawndesk.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the API layer caps password
    fields at 255 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("pawndesk_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt round against a dummy hash.

    Called when there is no real hash to check (unknown user) so the
    response time matches a real wrong-password attempt.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_in: int
    expires_at: datetime


class SessionTokenIssuer:
    """Issue, verify, and revoke session tokens backed by the sessions table."""

    def __init__(self, store: UserStore, secret_key: str | None = None, default_ttl: int | None = None) -> None:
        if secret_key is None or default_ttl is None:
            settings = get_settings()
            secret_key = secret_key or settings.secret_key
            default_ttl = default_ttl or settings.token_expire_seconds
        self._store = store
        self._secret_key = secret_key
        self._default_ttl = default_ttl

    def issue(self, user: User, scopes: list[str] | None = None, ttl: int | None = None) -> IssuedToken:
        """Sign a JWT for user and record its jti. ttl is in seconds."""
        duration = ttl if ttl and ttl > 0 else self._default_ttl
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=duration)
        jti = secrets.token_hex(16)
        payload = {
            "sub": user.username,
            "user_id": user.id,
            "role": user.role.value,
            "scopes": scopes or ["*"],
            "jti": jti,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        self._store.create_session(
            Session(
                jti=jti,
                user_id=user.id,
                name=f"auth-token-{int(now.timestamp())}",
                created_at=now,
                expires_at=expires_at,
            )
        )
        return IssuedToken(token=token, jti=jti, expires_in=duration, expires_at=expires_at)

    def verify(self, token: str) -> dict | None:
        """Return the payload of a valid, unrevoked token; None on any failure.

        Returning None (rather than raising) keeps callers simple: any invalid
        token is treated as unauthenticated.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if "user_id" not in payload or "jti" not in payload:
            return None
        if self._store.get_session(payload["jti"]) is None:
            return None
        return payload

    def revoke_current(self, jti: str) -> bool:
        return self._store.delete_session(jti)

    def revoke_all(self, user: User) -> int:
        """Invalidate every outstanding token for user. Returns the number revoked."""
        return self._store.delete_user_sessions(user.id)

    def revoke_others(self, user: User, keep_jti: str) -> int:
        """Invalidate every token for user except keep_jti."""
        return self._store.delete_user_sessions(user.id, keep_jti=keep_jti)
