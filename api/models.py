"""
API request and response models for PawnDesk REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Password fields on user-creation and reset bodies use StrongPassword, which
attaches every rule from auth.passwords.password_rules() as a validation
constraint. The change-password route runs the free-form check itself
because it needs the current password for context.
"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

from auth.models import Role, User
from auth.passwords import password_rules

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _enforce_password_rules(value: str) -> str:
    failed = [rule.message for rule in password_rules() if not rule.check(value)]
    if failed:
        raise ValueError(" ".join(failed))
    return value


StrongPassword = Annotated[str, Field(max_length=255), AfterValidator(_enforce_password_rules)]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error code plus a human message."""

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    error: ErrorDetail


class LoginErrorResponse(ErrorResponse):
    """Error envelope for refused logins, with lockout hints."""

    retry_after: Optional[int] = None
    attempts_remaining: Optional[int] = None
    locked: bool = False


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class PermissionGroup(BaseModel):
    """One module with the actions granted on it."""

    modulo: str = Field(min_length=1, max_length=50)
    acciones: list[str] = Field(default_factory=list)


class PermissionsUpdate(BaseModel):
    """Request body for PUT /api/v1/usuarios/{id}/permisos. Replaces the whole set."""

    permisos: list[PermissionGroup] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Operator account as shown to clients. Never includes the password hash."""

    id: int
    name: str
    username: str
    email: str
    role: Role
    is_active: bool
    permissions: list[PermissionGroup] = Field(default_factory=list)
    last_login_at: Optional[str] = None
    locked: bool = False
    force_password_change: bool = False

    @classmethod
    def from_user(cls, user: User, permissions: list[dict], locked: bool = False) -> "UserResponse":
        """Build a UserResponse from an auth User and its formatted permissions."""
        return cls(
            id=user.id,
            name=user.name,
            username=user.username,
            email=user.email,
            role=user.role,
            is_active=user.is_active,
            permissions=[PermissionGroup(**p) for p in permissions],
            last_login_at=user.last_login_at.isoformat() if user.last_login_at else None,
            locked=locked,
            force_password_change=user.force_password_change,
        )


class Pagination(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int
    per_page: int
    current_page: int
    last_page: int
    from_: int = Field(alias="from")
    to: int


class UserStats(BaseModel):
    """Counts over every account, unaffected by the list filters."""

    total: int
    activos: int
    inactivos: int
    por_rol: dict[str, int]


class UserListResponse(BaseModel):
    data: list[UserResponse]
    pagination: Pagination
    stats: UserStats


class UserCreate(BaseModel):
    """Request body for POST /api/v1/usuarios."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    username: str = Field(min_length=1, max_length=255, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: StrongPassword
    role: Role
    is_active: bool = True


class UserUpdate(BaseModel):
    """Request body for PUT /api/v1/usuarios/{id}.

    Every field is optional. Omitted or null fields keep their stored value.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    username: Optional[str] = Field(default=None, min_length=1, max_length=255, pattern=USERNAME_PATTERN)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    password: Optional[str] = Field(default=None, max_length=255)
    role: Optional[Role] = None
    is_active: Optional[bool] = None

    @field_validator("password")
    @classmethod
    def password_is_strong(cls, value: Optional[str]) -> Optional[str]:
        return _enforce_password_rules(value) if value is not None else None


class AdminPasswordReset(BaseModel):
    """Request body for POST /api/v1/usuarios/{id}/cambiar-password."""

    password: StrongPassword
    password_confirmation: str = Field(max_length=255)

    @model_validator(mode="after")
    def passwords_match(self) -> "AdminPasswordReset":
        if self.password != self.password_confirmation:
            raise ValueError("Password confirmation does not match.")
        return self


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. username may also be an email."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    """Successful login: the session token plus the operator and their permissions."""

    user: UserResponse
    require_password_change: bool = False


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)
    new_password_confirmation: str = Field(max_length=255)

    @model_validator(mode="after")
    def passwords_match(self) -> "ChangePasswordRequest":
        if self.new_password != self.new_password_confirmation:
            raise ValueError("Password confirmation does not match.")
        return self
