"""
tests/test_login_flow.py -- Unit tests for authenticate() gate ordering and outcomes.

Covers:
  - Success by username and by email; counters cleared
  - Unknown identity counts against the IP only
  - Wrong password counts against account and IP; hint only near the lock
  - A locked account is refused even with the right password
  - The IP gate is checked before the account is looked up
  - Inactive accounts are reported after the password check
  - Forced password change is a qualifier on success
"""

from __future__ import annotations

import pytest

from auth.attempts import AttemptTracker
from auth.login import LoginOutcome, authenticate
from auth.security import IP_BLOCK_THRESHOLD, LOCKOUT_MINUTES, MAX_FAILED_ATTEMPTS
from auth.store import UserStore

IP = "203.0.113.5"
PASSWORD = "Caja#2024pass"


@pytest.fixture
def cashier(user_factory):
    return user_factory("maria", password=PASSWORD)


def _login(guard, user_store, identifier, password, ip=IP):
    return authenticate(guard, user_store, identifier, password, ip)


def test_success_by_username(guard, user_store: UserStore, cashier) -> None:
    result = _login(guard, user_store, "maria", PASSWORD)
    assert result.ok
    assert result.outcome is LoginOutcome.SUCCESS
    assert result.user.id == cashier.id
    assert result.password_change_required is False
    assert user_store.get_by_id(cashier.id).last_login_ip == IP


def test_success_by_email(guard, user_store: UserStore, cashier) -> None:
    assert _login(guard, user_store, "maria@example.com", PASSWORD).ok


def test_unknown_identity_counts_against_ip(guard, user_store: UserStore, attempts: AttemptTracker) -> None:
    result = _login(guard, user_store, "nadie", "whatever")
    assert result.outcome is LoginOutcome.UNKNOWN_IDENTITY
    assert result.user is None
    assert attempts.get(IP) == 1


def test_wrong_password_counts_and_hints(guard, user_store: UserStore, cashier) -> None:
    first = _login(guard, user_store, "maria", "wrong")
    assert first.outcome is LoginOutcome.INVALID_CREDENTIALS
    assert first.attempts_remaining == MAX_FAILED_ATTEMPTS - 1
    assert first.show_attempts_hint is False

    second = _login(guard, user_store, "maria", "wrong")
    assert second.attempts_remaining == 3
    assert second.show_attempts_hint is True


def test_locked_account_refuses_correct_password(guard, user_store: UserStore, cashier) -> None:
    for _ in range(MAX_FAILED_ATTEMPTS):
        _login(guard, user_store, "maria", "wrong")

    result = _login(guard, user_store, "maria", PASSWORD)
    assert result.outcome is LoginOutcome.ACCOUNT_LOCKED
    assert result.retry_after_minutes == LOCKOUT_MINUTES
    # The refused attempt is not counted again.
    assert user_store.get_by_id(cashier.id).failed_login_attempts == MAX_FAILED_ATTEMPTS


def test_lock_lifts_after_expiry(guard, user_store: UserStore, cashier, clock) -> None:
    for i in range(MAX_FAILED_ATTEMPTS):
        _login(guard, user_store, "maria", "wrong", ip=f"10.0.0.{i}")
    clock.advance(minutes=LOCKOUT_MINUTES, seconds=1)
    assert _login(guard, user_store, "maria", PASSWORD).ok


def test_ip_gate_runs_before_lookup(guard, user_store: UserStore, cashier) -> None:
    for _ in range(IP_BLOCK_THRESHOLD):
        guard.record_failed_attempt_for_unknown_user("ghost", IP)

    result = _login(guard, user_store, "maria", PASSWORD)
    assert result.outcome is LoginOutcome.IP_BLOCKED
    assert result.user is None
    assert result.retry_after_minutes == LOCKOUT_MINUTES
    assert _login(guard, user_store, "maria", PASSWORD, ip="203.0.113.6").ok


def test_inactive_account_after_password(guard, user_store: UserStore, user_factory) -> None:
    user_factory("dormido", password=PASSWORD, is_active=False)
    assert _login(guard, user_store, "dormido", "wrong").outcome is LoginOutcome.INVALID_CREDENTIALS
    assert _login(guard, user_store, "dormido", PASSWORD).outcome is LoginOutcome.INACTIVE_ACCOUNT


def test_forced_change_is_reported_on_success(guard, user_store: UserStore, user_factory) -> None:
    user_factory("nuevo", password=PASSWORD, force_password_change=True)
    result = _login(guard, user_store, "nuevo", PASSWORD)
    assert result.ok
    assert result.password_change_required is True
