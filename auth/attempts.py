"""
auth/attempts.py -- Failed-login counters per client IP.

The IP namespace lives in the expiring CounterCache: each failure pushes the
entry's expiry to now + ATTEMPT_RESET_MINUTES, so the window rolls with the
attacker instead of resetting on a fixed schedule.

The per-user namespace is NOT here. It lives on the user record
(failed_login_attempts / last_failed_login_at / locked_until) because it has
to outlive cache eviction and stay auditable; see UserStore.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from cache.store import CounterCache

ATTEMPT_RESET_MINUTES = 30

_KEY_PREFIX = "login_attempts_ip:"


class AttemptTracker:
    """Rolling failed-attempt counter keyed by client IP."""

    def __init__(self, cache: CounterCache, reset_minutes: int = ATTEMPT_RESET_MINUTES) -> None:
        self._cache = cache
        self._ttl_seconds = reset_minutes * 60

    @staticmethod
    def _key(ip: str) -> str:
        return f"{_KEY_PREFIX}{ip}"

    def increment(self, ip: str) -> int:
        """Record one failure from ip; returns the count inside the current window."""
        return self._cache.increment(self._key(ip), ttl=self._ttl_seconds)

    def get(self, ip: str) -> int:
        return self._cache.get(self._key(ip)) or 0

    def clear(self, ip: str) -> None:
        self._cache.forget(self._key(ip))
