"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_session are the mappers.
Services and routes never touch SQL directly.

Tables:
  users             -- identity record, including the lockout security fields
  permissions       -- catalog rows, UNIQUE(module, action)
  user_permissions  -- pivot user <-> permission; pivot id order is the
                       order in which the user received each grant
  sessions          -- one row per live session token (JWT jti)

Security:
  All queries use bound parameters. No f-strings in SQL.

  failed_login_attempts is only ever bumped with "col = col + 1" inside a
  transaction, so concurrent failures against the same account are counted
  individually rather than lost to a read-modify-write race.

Timestamps are persisted as ISO 8601 text and mapped back to timezone-aware
datetimes.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Permission, Role, Session, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'pawndesk_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    # Security fields -- written only by AccountSecurityGuard
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("last_failed_login_at", String(32)),
    Column("locked_until", String(32)),
    Column("last_login_ip", String(45)),
    Column("last_login_at", String(32)),
    Column("password_changed_at", String(32)),
    Column("force_password_change", Integer, nullable=False, server_default="0"),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("module", String(50), nullable=False),
    Column("action", String(50), nullable=False),
    Column("description", String(255)),
    UniqueConstraint("module", "action", name="uq_permissions_module_action"),
)

_user_permissions = Table(
    "user_permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("user_id", "permission_id", name="uq_user_permissions"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("name", String(100), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

# Columns update_user() converts on the way in.
_DATETIME_FIELDS = {
    "created_at",
    "last_failed_login_at",
    "locked_until",
    "last_login_at",
    "password_changed_at",
}
_BOOL_FIELDS = {"is_active", "force_password_change"}

# Columns list_users() accepts as a sort key.
USER_ORDER_COLUMNS = ("name", "email", "role", "created_at", "is_active")


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection and not inherited from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _user_filters(role: Role | None, search: str | None, is_active: bool | None) -> list:
    clauses = []
    if role is not None:
        clauses.append(_users.c.role == Role(role).value)
    if is_active is not None:
        clauses.append(_users.c.is_active == (1 if is_active else 0))
    if search:
        pattern = f"%{search}%"
        clauses.append(
            or_(
                _users.c.name.like(pattern),
                _users.c.username.like(pattern),
                _users.c.email.like(pattern),
            )
        )
    return clauses


def _to_columns(fields: dict) -> dict:
    values = {}
    for key, value in fields.items():
        if key in _DATETIME_FIELDS:
            value = _to_iso(value)
        elif key in _BOOL_FIELDS:
            value = 1 if value else 0
        elif key == "role":
            value = Role(value).value
        values[key] = value
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, permission catalog rows, grants, and sessions.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="admin", email="a@x.com", role=Role.ADMINISTRATOR))
        user = store.get_by_login("admin")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user with zeroed security fields and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email is taken.
        """
        now = _now()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    name=user.name,
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    is_active=1 if user.is_active else 0,
                    created_at=_to_iso(now),
                    failed_login_attempts=0,
                    password_changed_at=_to_iso(user.password_changed_at or now),
                    force_password_change=1 if user.force_password_change else 0,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Exact, case-sensitive username lookup."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_login(self, identifier: str) -> User | None:
        """Resolve a login identifier that may be either a username or an email."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select()
                .where(or_(_users.c.username == identifier, _users.c.email == identifier))
                .order_by(_users.c.id)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(
        self,
        role: Role | None = None,
        search: str | None = None,
        is_active: bool | None = None,
        order_by: str = "name",
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[User]:
        """Return one page of users matching the filters.

        order_by must be one of USER_ORDER_COLUMNS; ties are broken by id in
        the same direction. limit=None returns every match.

        Raises ValueError for an unknown order_by.
        """
        if order_by not in USER_ORDER_COLUMNS:
            raise ValueError(f"Cannot order users by {order_by!r}")
        column = _users.c[order_by]
        ordering = (column.desc(), _users.c.id.desc()) if descending else (column.asc(), _users.c.id.asc())
        query = _users.select().where(*_user_filters(role, search, is_active)).order_by(*ordering).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self, role: Role | None = None, search: str | None = None, is_active: bool | None = None) -> int:
        """Number of users matching the same filters as list_users()."""
        query = select(func.count()).select_from(_users).where(*_user_filters(role, search, is_active))
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def user_stats(self) -> dict:
        """Totals over every user, regardless of any list filter."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(_users.c.is_active, func.count()).group_by(_users.c.is_active)).fetchall()
        by_state = {bool(row[0]): row[1] for row in rows}
        active, inactive = by_state.get(True, 0), by_state.get(False, 0)
        return {
            "total": active + inactive,
            "active": active,
            "inactive": inactive,
            "by_role": self.count_by_role(),
        }

    def update_user(self, user_id: int, **fields) -> bool:
        """Update fields on an existing user.

        datetime, bool and Role values are converted to their column
        representation. Returns True if a row was updated.

        Raises sqlalchemy.exc.IntegrityError if a new username or email
        belongs to another user.
        """
        if not fields:
            return False
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**_to_columns(fields)))
        return result.rowcount > 0

    def increment_failed_attempts(self, user_id: int, at: datetime) -> int:
        """Atomically add one failed attempt and stamp last_failed_login_at.

        Returns the counter value after the increment, as seen inside the
        same transaction.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_login_attempts=_users.c.failed_login_attempts + 1,
                    last_failed_login_at=_to_iso(at),
                )
            )
            value = conn.execute(
                select(_users.c.failed_login_attempts).where(_users.c.id == user_id)
            ).scalar()
        return value or 0

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == Role.ADMINISTRATOR.value) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    def count_by_role(self) -> dict[str, int]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_users.c.role, func.count()).group_by(_users.c.role)).fetchall()
        counts = {role.value: 0 for role in Role}
        counts.update({row[0]: row[1] for row in rows})
        return counts

    def delete_user(self, user_id: int) -> bool:
        """Delete a user together with its grants and sessions.

        Callers must check the last-administrator invariant first.
        """
        with self.engine.begin() as conn:
            conn.execute(_user_permissions.delete().where(_user_permissions.c.user_id == user_id))
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Permission catalog rows
    # ------------------------------------------------------------------

    def seed_permissions(self, grants: Iterable[tuple[str, str]]) -> int:
        """Insert any (module, action) rows not already present. Returns rows created.

        Idempotent: existing rows keep their ids, so pivots stay valid.
        """
        created = 0
        with self.engine.begin() as conn:
            existing = {(r.module, r.action) for r in conn.execute(select(_permissions.c.module, _permissions.c.action))}
            for module, action in grants:
                if (module, action) in existing:
                    continue
                conn.execute(
                    _permissions.insert().values(
                        module=module,
                        action=action,
                        description=f"{action.capitalize()} en {module.capitalize()}",
                    )
                )
                existing.add((module, action))
                created += 1
        return created

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.id)).fetchall()
        return [Permission(id=r.id, module=r.module, action=r.action, description=r.description) for r in rows]

    def permission_ids(self, grants: Iterable[tuple[str, str]]) -> dict[tuple[str, str], int]:
        """Map each requested (module, action) that has a catalog row to its id.

        Pairs without a row are simply absent from the result.
        """
        wanted = set(grants)
        if not wanted:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(select(_permissions.c.id, _permissions.c.module, _permissions.c.action)).fetchall()
        return {(r.module, r.action): r.id for r in rows if (r.module, r.action) in wanted}

    # ------------------------------------------------------------------
    # Grants (user_permissions pivot)
    # ------------------------------------------------------------------

    def get_user_grants(self, user_id: int) -> list[tuple[str, str]]:
        """The user's explicit grant set, in the order the grants were given."""
        query = (
            select(_permissions.c.module, _permissions.c.action)
            .select_from(_user_permissions.join(_permissions, _user_permissions.c.permission_id == _permissions.c.id))
            .where(_user_permissions.c.user_id == user_id)
            .order_by(_user_permissions.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [(r.module, r.action) for r in rows]

    def has_grant(self, user_id: int, module: str, action: str) -> bool:
        query = (
            select(func.count())
            .select_from(_user_permissions.join(_permissions, _user_permissions.c.permission_id == _permissions.c.id))
            .where(
                (_user_permissions.c.user_id == user_id)
                & (_permissions.c.module == module)
                & (_permissions.c.action == action)
            )
        )
        with self.engine.connect() as conn:
            return (conn.execute(query).scalar() or 0) > 0

    def has_module_grant(self, user_id: int, module: str) -> bool:
        query = (
            select(func.count())
            .select_from(_user_permissions.join(_permissions, _user_permissions.c.permission_id == _permissions.c.id))
            .where((_user_permissions.c.user_id == user_id) & (_permissions.c.module == module))
        )
        with self.engine.connect() as conn:
            return (conn.execute(query).scalar() or 0) > 0

    def replace_user_grants(self, user_id: int, permission_ids: Iterable[int]) -> None:
        """Replace the user's whole grant set in one transaction.

        permission_ids order becomes the new insertion order; duplicates are
        collapsed to their first occurrence.
        """
        ordered = list(dict.fromkeys(permission_ids))
        with self.engine.begin() as conn:
            conn.execute(_user_permissions.delete().where(_user_permissions.c.user_id == user_id))
            if ordered:
                conn.execute(
                    _user_permissions.insert(),
                    [{"user_id": user_id, "permission_id": pid} for pid in ordered],
                )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    jti=session.jti,
                    user_id=session.user_id,
                    name=session.name,
                    created_at=_to_iso(session.created_at or _now()),
                    expires_at=_to_iso(session.expires_at),
                )
            )

    def get_session(self, jti: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.jti == jti)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, user_id: int) -> list[Session]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.created_at)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_session(self, jti: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.jti == jti))
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: int, keep_jti: str | None = None) -> int:
        """Delete every session of user_id, optionally sparing keep_jti. Returns rows removed."""
        query = _sessions.delete().where(_sessions.c.user_id == user_id)
        if keep_jti is not None:
            query = query.where(_sessions.c.jti != keep_jti)
        with self.engine.begin() as conn:
            result = conn.execute(query)
        return result.rowcount

    def purge_expired_sessions(self, now: datetime | None = None) -> int:
        cutoff = _to_iso(now or _now())
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < cutoff))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        name=row.name or "",
        hashed_password=row.hashed_password,
        role=Role(row.role),
        is_active=bool(row.is_active),
        created_at=_from_iso(row.created_at),
        failed_login_attempts=row.failed_login_attempts or 0,
        last_failed_login_at=_from_iso(row.last_failed_login_at),
        locked_until=_from_iso(row.locked_until),
        last_login_at=_from_iso(row.last_login_at),
        last_login_ip=row.last_login_ip,
        password_changed_at=_from_iso(row.password_changed_at),
        force_password_change=bool(row.force_password_change),
    )


def _row_to_session(row) -> Session:
    return Session(
        jti=row.jti,
        user_id=row.user_id,
        name=row.name or "",
        created_at=_from_iso(row.created_at),
        expires_at=_from_iso(row.expires_at),
    )
