"""
auth/security.py -- Account lockout and login gating.

AccountSecurityGuard is the only writer of the user security fields
(failed_login_attempts, last_failed_login_at, locked_until, last_login_at,
last_login_ip) and, through AttemptTracker, of the per-IP counters.

Per-account state machine:

    Open --(failed_login_attempts reaches MAX_FAILED_ATTEMPTS)--> Locked
    Locked --(locked_until passes; reconciled on next access)--> Open
    any --(successful authentication)--> Open, counters cleared

There is no background job that unlocks accounts. The expiry is applied
lazily: is_lock_expired() is the pure predicate, reconcile_lock() is the
idempotent mutation, and is_user_locked() runs both. Callers that only need
to look must use is_locked(); callers on the login path use is_user_locked().

Gating order on login (see auth/login.py) is fixed:
    1. is_ip_blocked(ip)        before any account lookup
    2. resolve the user
    3. is_user_locked(user)     before the password is compared
    4. verify credentials
    5. record_failed_attempt / clear_failed_attempts

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.attempts import ATTEMPT_RESET_MINUTES, AttemptTracker
from auth.audit import audit
from auth.models import User
from auth.passwords import PASSWORD_MIN_LENGTH
from auth.store import UserStore
from auth.tokens import SessionTokenIssuer

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_MINUTES = 15
# One source may fail across many accounts twice as often as one account
# may fail before the source itself is refused.
IP_BLOCK_THRESHOLD = MAX_FAILED_ATTEMPTS * 2

__all__ = [
    "ATTEMPT_RESET_MINUTES",
    "IP_BLOCK_THRESHOLD",
    "LOCKOUT_MINUTES",
    "MAX_FAILED_ATTEMPTS",
    "PASSWORD_MIN_LENGTH",
    "AccountSecurityGuard",
    "is_lock_expired",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_lock_expired(locked_until: datetime | None, now: datetime) -> bool:
    """True when a lock was set and its deadline is no longer in the future."""
    return locked_until is not None and locked_until <= now


class AccountSecurityGuard:
    def __init__(
        self,
        store: UserStore,
        attempts: AttemptTracker,
        tokens: SessionTokenIssuer,
        clock: Callable[[], datetime] = _utcnow,
        password_max_age_days: int | None = None,
    ) -> None:
        self._store = store
        self._attempts = attempts
        self._tokens = tokens
        self._clock = clock
        self._password_max_age_days = password_max_age_days

    # ------------------------------------------------------------------
    # IP gate
    # ------------------------------------------------------------------

    def is_ip_blocked(self, ip: str) -> bool:
        return self._attempts.get(ip) >= IP_BLOCK_THRESHOLD

    # ------------------------------------------------------------------
    # Account lock
    # ------------------------------------------------------------------

    def is_locked(self, user: User) -> bool:
        """Pure query: is the lock deadline still in the future?"""
        return user.locked_until is not None and user.locked_until > self._clock()

    def reconcile_lock(self, user: User) -> bool:
        """Clear an expired lock on user and in the store.

        Resets failed_login_attempts to 0 together with locked_until.
        Idempotent. Returns True if this call cleared a lock.
        """
        if not is_lock_expired(user.locked_until, self._clock()):
            return False
        self._store.update_user(user.id, locked_until=None, failed_login_attempts=0)
        user.locked_until = None
        user.failed_login_attempts = 0
        audit("lock_expired", user_id=user.id, username=user.username)
        return True

    def is_user_locked(self, user: User) -> bool:
        """Reconcile an expired lock, then report whether user is locked.

        Side effect: an expired lock is cleared (see reconcile_lock).
        """
        self.reconcile_lock(user)
        return self.is_locked(user)

    def get_lockout_remaining_minutes(self, user: User) -> int:
        """Whole minutes until the lock lifts, rounded up; 0 when not locked."""
        if user.locked_until is None:
            return 0
        seconds = (user.locked_until - self._clock()).total_seconds()
        return max(0, math.ceil(seconds / 60))

    def attempts_remaining(self, user: User) -> int:
        return max(0, MAX_FAILED_ATTEMPTS - user.failed_login_attempts)

    # ------------------------------------------------------------------
    # Recording outcomes
    # ------------------------------------------------------------------

    def record_failed_attempt(self, user: User, ip: str) -> int:
        """Count a wrong password for user from ip; lock the account at the threshold.

        The lock is set once, by the failure that brings the counter to
        MAX_FAILED_ATTEMPTS. Later failures are counted but neither extend
        locked_until nor emit another account_locked event.

        Returns the user's failure count after this attempt. user is updated
        in place to mirror the stored record.
        """
        now = self._clock()
        count = self._store.increment_failed_attempts(user.id, now)
        user.failed_login_attempts = count
        user.last_failed_login_at = now
        ip_count = self._attempts.increment(ip)

        if count == MAX_FAILED_ATTEMPTS:
            locked_until = now + timedelta(minutes=LOCKOUT_MINUTES)
            self._store.update_user(user.id, locked_until=locked_until)
            user.locked_until = locked_until
            audit(
                "account_locked",
                level=logging.WARNING,
                user_id=user.id,
                username=user.username,
                ip=ip,
                attempts=count,
                locked_until=locked_until.isoformat(),
            )

        audit(
            "login_failed",
            user_id=user.id,
            username=user.username,
            ip=ip,
            attempt_number=count,
            ip_attempts=ip_count,
        )
        return count

    def record_failed_attempt_for_unknown_user(self, username_attempted: str, ip: str) -> int:
        """Count a failure against ip only. Returns the IP's count in the window."""
        ip_count = self._attempts.increment(ip)
        audit(
            "login_failed_unknown_user",
            username_attempted=username_attempted,
            ip=ip,
            ip_attempts=ip_count,
        )
        return ip_count

    def clear_failed_attempts(self, user: User, ip: str) -> None:
        """Success path: reset the account counters and forget this IP's counter.

        Other IPs that tried the same account keep their counters.
        """
        now = self._clock()
        self._store.update_user(
            user.id,
            failed_login_attempts=0,
            last_failed_login_at=None,
            locked_until=None,
            last_login_at=now,
            last_login_ip=ip,
        )
        user.failed_login_attempts = 0
        user.last_failed_login_at = None
        user.locked_until = None
        user.last_login_at = now
        user.last_login_ip = ip
        self._attempts.clear(ip)
        audit("login_succeeded", user_id=user.id, username=user.username, ip=ip)

    # ------------------------------------------------------------------
    # Password age and sessions
    # ------------------------------------------------------------------

    def needs_password_change(self, user: User) -> bool:
        """True if an administrator forced a change, or the password outlived the
        configured maximum age. The age policy is off unless password_max_age_days is set.
        """
        if user.force_password_change:
            return True
        if self._password_max_age_days and user.password_changed_at is not None:
            age = self._clock() - user.password_changed_at
            return age.days > self._password_max_age_days
        return False

    def record_password_change(self, user: User, hashed_password: str, forced: bool = False) -> None:
        """Store a new password hash and stamp password_changed_at.

        Self-service changes (forced=False) clear force_password_change. An
        administrator reset (forced=True) raises it so the owner has to pick
        their own password at next login.
        """
        now = self._clock()
        self._store.update_user(
            user.id,
            hashed_password=hashed_password,
            password_changed_at=now,
            force_password_change=forced,
        )
        user.hashed_password = hashed_password
        user.password_changed_at = now
        user.force_password_change = forced
        audit("password_changed", user_id=user.id, username=user.username, forced=forced)

    def unlock(self, user: User) -> None:
        """Operator override: open a locked account immediately."""
        self._store.update_user(user.id, locked_until=None, failed_login_attempts=0, last_failed_login_at=None)
        user.locked_until = None
        user.failed_login_attempts = 0
        user.last_failed_login_at = None
        audit("account_unlocked", level=logging.WARNING, user_id=user.id, username=user.username)

    def revoke_all_tokens(self, user: User) -> int:
        """Invalidate every outstanding session token of user."""
        revoked = self._tokens.revoke_all(user)
        audit("tokens_revoked", user_id=user.id, username=user.username, revoked=revoked)
        return revoked
