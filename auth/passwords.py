"""
auth/passwords.py -- Password strength policy.

Every rule is evaluated independently and all violations are reported, so a
user fixing a weak password sees the full list in one round trip.

The rules are exposed twice:
  password_rules()    -- declarative PasswordRule objects. API models attach
                         them to password fields as acceptance constraints.
  validate_strength() -- free-form check returning violation messages.
                         violations_for() adds context-dependent checks such
                         as "differs from the current password".

Pure functions, no side effects, no I/O.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

PASSWORD_MIN_LENGTH = 8
REQUIRE_UPPERCASE = True
REQUIRE_LOWERCASE = True
REQUIRE_NUMBER = True
REQUIRE_SPECIAL = True

SPECIAL_CHARACTERS = "!@#$%^&*(),.?\":{}|<>_-+=[]\\/"

COMMON_PASSWORDS = frozenset({"password", "123456", "12345678", "qwerty", "admin", "letmein", "welcome"})

_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")


@dataclass(frozen=True)
class PasswordRule:
    """A single acceptance constraint. check() returns True when satisfied."""

    code: str
    message: str
    check: Callable[[str], bool]


def _build_rules() -> tuple[PasswordRule, ...]:
    rules = [
        PasswordRule(
            code="min_length",
            message=f"Password must be at least {PASSWORD_MIN_LENGTH} characters long.",
            check=lambda p: len(p) >= PASSWORD_MIN_LENGTH,
        )
    ]
    if REQUIRE_UPPERCASE:
        rules.append(
            PasswordRule(
                code="uppercase",
                message="Password must contain at least one uppercase letter.",
                check=lambda p: re.search(r"[A-Z]", p) is not None,
            )
        )
    if REQUIRE_LOWERCASE:
        rules.append(
            PasswordRule(
                code="lowercase",
                message="Password must contain at least one lowercase letter.",
                check=lambda p: re.search(r"[a-z]", p) is not None,
            )
        )
    if REQUIRE_NUMBER:
        rules.append(
            PasswordRule(
                code="number",
                message="Password must contain at least one number.",
                check=lambda p: re.search(r"[0-9]", p) is not None,
            )
        )
    if REQUIRE_SPECIAL:
        rules.append(
            PasswordRule(
                code="special",
                message="Password must contain at least one special character (!@#$%^&*...).",
                check=lambda p: _SPECIAL_RE.search(p) is not None,
            )
        )
    rules.append(
        PasswordRule(
            code="common",
            message="This password is too common and is not secure.",
            check=lambda p: p.lower() not in COMMON_PASSWORDS,
        )
    )
    return tuple(rules)


_RULES = _build_rules()


def password_rules() -> tuple[PasswordRule, ...]:
    """Return the policy as declarative constraints, in evaluation order."""
    return _RULES


def validate_strength(password: str) -> list[str]:
    """Return every policy violation for password. Empty list means valid."""
    return [rule.message for rule in _RULES if not rule.check(password)]


def violations_for(password: str, current: str | None = None) -> list[str]:
    """Strength check plus "must differ from the current password".

    current is the plaintext the user just proved they know (change-password
    flow). Comparing plaintexts avoids a second bcrypt round.
    """
    errors = validate_strength(password)
    if current is not None and password == current:
        errors.append("The new password must be different from the current one.")
    return errors
