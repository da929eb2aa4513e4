#!/usr/bin/env python3
"""
PawnDesk -- operator command line for the security core.

Usage:
  python main.py seed
  python main.py unlock cajero
  python main.py reset-permissions tasador
  python main.py check-password 'Candidate#2024'

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the user store (default: sqlite:///pawndesk.db)
  SECRET_KEY     Required unless DEBUG=true
"""

import argparse
import secrets
import sys

from auth.attempts import AttemptTracker
from auth.catalog import default_catalog
from auth.models import Role, User
from auth.passwords import validate_strength
from auth.permissions import AuthorizationService
from auth.security import AccountSecurityGuard
from auth.store import UserStore
from auth.tokens import SessionTokenIssuer, hash_password
from cache.store import CounterCache
from core.config import get_settings

# One operator per role, created on first seed only.
DEFAULT_USERS: list[dict] = [
    {"name": "Administrador Sistema", "username": "admin", "email": "admin@sistema.com", "role": Role.ADMINISTRATOR},
    {"name": "María García", "username": "cajero", "email": "cajero@sistema.com", "role": Role.CASHIER},
    {"name": "Juan López", "username": "tasador", "email": "tasador@sistema.com", "role": Role.APPRAISER},
    {"name": "Ana Martínez", "username": "vendedor", "email": "vendedor@sistema.com", "role": Role.SELLER},
    {"name": "Carlos Rodríguez", "username": "supervisor", "email": "supervisor@sistema.com", "role": Role.SUPERVISOR},
]


def _temporary_password() -> str:
    # token_urlsafe may lack a class; the suffix covers every character rule.
    return secrets.token_urlsafe(12) + "Aa1!"


def _open() -> tuple[UserStore, CounterCache, AccountSecurityGuard, AuthorizationService]:
    settings = get_settings()
    store = UserStore(settings.database_url)
    cache = CounterCache(settings.cache_path)
    guard = AccountSecurityGuard(
        store,
        AttemptTracker(cache),
        SessionTokenIssuer(store),
        password_max_age_days=settings.password_max_age_days,
    )
    return store, cache, guard, AuthorizationService(store, default_catalog())


def _require_user(store: UserStore, username: str) -> User:
    user = store.get_by_username(username)
    if user is None:
        print(f"  [!] No user named '{username}'.")
        sys.exit(1)
    return user


def cmd_seed(store: UserStore, guard: AccountSecurityGuard, authz: AuthorizationService, args) -> int:
    """Insert the catalog rows and the default operators, then give each its role defaults.

    Existing users are left untouched. New users get a random temporary
    password, printed once, and must change it at first login.
    """
    created = authz.seed_catalog()
    print(f"  Permission catalog: {created} new row(s), {len(authz.catalog.grants())} total.")

    for data in DEFAULT_USERS:
        if store.get_by_username(data["username"]) is not None:
            print(f"  {data['username']:<12} exists, skipped")
            continue
        password = _temporary_password()
        user_id = store.create_user(
            User(hashed_password=hash_password(password), force_password_change=True, **data)
        )
        user = store.get_by_id(user_id)
        grants = authz.assign_default_permissions(user)
        print(f"  {user.username:<12} created ({user.role.value}, {len(grants)} grants)  temporary password: {password}")
    return 0


def cmd_unlock(store: UserStore, guard: AccountSecurityGuard, authz: AuthorizationService, args) -> int:
    user = _require_user(store, args.username)
    guard.unlock(user)
    print(f"  {user.username} unlocked.")
    return 0


def cmd_reset_permissions(store: UserStore, guard: AccountSecurityGuard, authz: AuthorizationService, args) -> int:
    user = _require_user(store, args.username)
    grants = authz.assign_default_permissions(user)
    print(f"  {user.username}: {len(grants)} grant(s) from the '{user.role.value}' template.")
    for group in authz.get_formatted_permissions(user):
        print(f"    {group['modulo']:<14} {', '.join(group['acciones'])}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="pawndesk",
        description="Operator tasks for the PawnDesk security core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed
  python main.py unlock cajero
  python main.py reset-permissions tasador
  python main.py check-password 'Candidate#2024'
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("seed", help="Seed the permission catalog and the default operators")
    unlock = sub.add_parser("unlock", help="Lift a lockout and reset the failed-attempt counter")
    unlock.add_argument("username")
    reset = sub.add_parser("reset-permissions", help="Reset a user's grants to their role defaults")
    reset.add_argument("username")
    check = sub.add_parser("check-password", help="Evaluate a candidate password against the policy")
    check.add_argument("password")
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    # Pure policy check, no store needed.
    if args.command == "check-password":
        errors = validate_strength(args.password)
        if not errors:
            print("  Password meets the policy.")
            return
        for message in errors:
            print(f"  [!] {message}")
        sys.exit(1)

    handlers = {
        "seed": cmd_seed,
        "unlock": cmd_unlock,
        "reset-permissions": cmd_reset_permissions,
    }
    store, cache, guard, authz = _open()
    try:
        code = handlers[args.command](store, guard, authz, args)
    finally:
        cache.close()
        store.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
