"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the domain shape.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of back-office roles.

    Only ADMINISTRATOR receives the structural permission bypass. Values are
    the persisted strings used by the rest of the application.
    """

    ADMINISTRATOR = "administrador"
    CASHIER = "cajero"
    APPRAISER = "tasador"
    SELLER = "vendedor"
    SUPERVISOR = "supervisor"


@dataclass
class User:
    """A back-office operator account.

    The security block (failed_login_attempts .. force_password_change) is
    owned by auth.security.AccountSecurityGuard. Nothing else writes those
    fields; the admin password reset only raises force_password_change.

    All timestamps are timezone-aware UTC datetimes.
    """

    username: str
    email: str
    role: Role
    name: str = ""
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    created_at: datetime | None = None

    # Security fields
    failed_login_attempts: int = 0
    last_failed_login_at: datetime | None = None
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    password_changed_at: datetime | None = None
    force_password_change: bool = False

    @property
    def is_administrator(self) -> bool:
        return self.role is Role.ADMINISTRATOR


@dataclass(frozen=True)
class Permission:
    """One row of the permission catalog table: a (module, action) grant."""

    module: str
    action: str
    id: int | None = None
    description: str | None = None


@dataclass
class Session:
    """A live session token, identified by the JWT "jti" claim.

    A token is only honoured while its row exists. Logout deletes one row,
    logout-all deletes every row for the user.
    """

    jti: str
    user_id: int
    expires_at: datetime
    name: str = ""
    created_at: datetime | None = None
