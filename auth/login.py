"""
auth/login.py -- Credential check wrapped in the lockout gates.

authenticate() never raises for an expected outcome. It returns a
LoginResult and the HTTP layer maps the outcome to a status code.

The order of the gates is load-bearing:
  IP block      -- refused before any account is looked up, so a noisy
                   source cannot make us pay for lookups or bcrypt rounds.
  lookup        -- unknown identities still burn one bcrypt round.
  account lock  -- checked before the password so a locked account never
                   reveals whether the submitted password was right.
  password
  active flag   -- checked after the password, like the lock, so an
                   inactive account is only reported to its owner.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from auth.audit import audit
from auth.models import User
from auth.security import LOCKOUT_MINUTES, AccountSecurityGuard
from auth.store import UserStore
from auth.tokens import burn_password_check, verify_password

# Remaining-attempt hints are only shown once the user is this close to a lock.
ATTEMPTS_HINT_THRESHOLD = 3


class LoginOutcome(str, Enum):
    IP_BLOCKED = "ip_blocked"
    UNKNOWN_IDENTITY = "unknown_identity"
    ACCOUNT_LOCKED = "account_locked"
    INVALID_CREDENTIALS = "invalid_credentials"
    INACTIVE_ACCOUNT = "inactive_account"
    SUCCESS = "success"


@dataclass
class LoginResult:
    outcome: LoginOutcome
    user: User | None = None
    retry_after_minutes: int | None = None
    attempts_remaining: int | None = None
    password_change_required: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is LoginOutcome.SUCCESS

    @property
    def show_attempts_hint(self) -> bool:
        return (
            self.outcome is LoginOutcome.INVALID_CREDENTIALS
            and self.attempts_remaining is not None
            and 0 < self.attempts_remaining <= ATTEMPTS_HINT_THRESHOLD
        )


def authenticate(
    guard: AccountSecurityGuard,
    store: UserStore,
    identifier: str,
    password: str,
    ip: str,
) -> LoginResult:
    """Run one login attempt for identifier (username or email) from ip."""
    if guard.is_ip_blocked(ip):
        audit("login_ip_blocked", level=logging.WARNING, ip=ip)
        return LoginResult(LoginOutcome.IP_BLOCKED, retry_after_minutes=LOCKOUT_MINUTES)

    user = store.get_by_login(identifier)
    if user is None or user.hashed_password is None:
        burn_password_check(password)
        guard.record_failed_attempt_for_unknown_user(identifier, ip)
        return LoginResult(LoginOutcome.UNKNOWN_IDENTITY)

    if guard.is_user_locked(user):
        return LoginResult(
            LoginOutcome.ACCOUNT_LOCKED,
            user=user,
            retry_after_minutes=guard.get_lockout_remaining_minutes(user),
        )

    if not verify_password(password, user.hashed_password):
        guard.record_failed_attempt(user, ip)
        return LoginResult(
            LoginOutcome.INVALID_CREDENTIALS,
            user=user,
            attempts_remaining=guard.attempts_remaining(user),
        )

    if not user.is_active:
        audit("login_inactive_account", level=logging.WARNING, user_id=user.id, username=user.username, ip=ip)
        return LoginResult(LoginOutcome.INACTIVE_ACCOUNT, user=user)

    guard.clear_failed_attempts(user, ip)
    return LoginResult(
        LoginOutcome.SUCCESS,
        user=user,
        password_change_required=guard.needs_password_change(user),
    )
