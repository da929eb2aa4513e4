"""
api/routes/v1/users.py -- Operator account administration.

Routes:
  GET    /api/v1/usuarios                          -- paginated list + stats (usuarios:ver)
  GET    /api/v1/usuarios/{id}                     -- detail (usuarios:ver)
  POST   /api/v1/usuarios                          -- create + role defaults (usuarios:crear)
  PUT    /api/v1/usuarios/{id}                     -- partial update (usuarios:editar)
  POST   /api/v1/usuarios/{id}/toggle-activo       -- flip is_active (usuarios:editar)
  POST   /api/v1/usuarios/{id}/cambiar-password    -- admin password reset (usuarios:editar)
  POST   /api/v1/usuarios/{id}/desbloquear         -- lift a lockout (usuarios:editar)
  DELETE /api/v1/usuarios/{id}                     -- delete (usuarios:eliminar)

List query parameters:
  rol, activo, busqueda      -- filters (busqueda matches name, username, email)
  order_by, order_dir        -- name | email | rol | created_at | activo, asc | desc;
                                anything else sorts by created_at desc
  page, per_page             -- per_page defaults to 10 and is capped at 100

Invariants:
  The last active administrator cannot be deactivated, demoted or deleted.
  Nobody can deactivate, demote or delete their own account.
  An admin password reset forces a change at next login and revokes every
  session of the target.
"""

from __future__ import annotations

import math
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import (
    AdminPasswordReset,
    MessageResponse,
    Pagination,
    UserCreate,
    UserListResponse,
    UserResponse,
    UserStats,
    UserUpdate,
)
from auth.dependencies import require_permission
from auth.models import Role, User
from auth.store import UserStore
from auth.tokens import hash_password

router = APIRouter()

MAX_PER_PAGE = 100

# Public sort keys -> UserStore columns
_ORDER_FIELDS = {
    "name": "name",
    "email": "email",
    "rol": "role",
    "created_at": "created_at",
    "activo": "is_active",
}

_CONFLICT = {"code": "conflict", "message": "A user with that username or email already exists."}


def user_response(request: Request, user: User) -> UserResponse:
    state = request.app.state
    return UserResponse.from_user(
        user,
        state.authz.get_formatted_permissions(user),
        locked=state.guard.is_locked(user),
    )


def _get_target(user_store: UserStore, user_id: int) -> User:
    target = user_store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return target


def _guard_last_admin(user_store: UserStore, target: User, current_user: User) -> None:
    if target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_modification", "message": "You cannot deactivate, demote or delete your own account."},
        )
    if target.is_administrator and target.is_active and user_store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "The last active administrator cannot be removed."},
        )


@router.get("/usuarios", response_model=UserListResponse)
def list_users(
    request: Request,
    rol: Optional[Role] = None,
    activo: Optional[bool] = None,
    busqueda: Optional[str] = None,
    order_by: str = "created_at",
    order_dir: str = "desc",
    page: Annotated[int, Query(ge=1)] = 1,
    per_page: Annotated[int, Query(ge=1)] = 10,
    current_user: User = Depends(require_permission("usuarios", "ver")),
) -> UserListResponse:
    user_store: UserStore = request.app.state.user_store
    per_page = min(per_page, MAX_PER_PAGE)
    column = _ORDER_FIELDS.get(order_by)
    if column is None:
        column, order_dir = "created_at", "desc"

    filters = {"role": rol, "search": busqueda, "is_active": activo}
    total = user_store.count_users(**filters)
    offset = (page - 1) * per_page
    users = user_store.list_users(
        **filters,
        order_by=column,
        descending=order_dir != "asc",
        limit=per_page,
        offset=offset,
    )
    stats = user_store.user_stats()
    return UserListResponse(
        data=[user_response(request, u) for u in users],
        pagination=Pagination(
            total=total,
            per_page=per_page,
            current_page=page,
            last_page=math.ceil(total / per_page),
            from_=offset + 1 if users else 0,
            to=offset + len(users),
        ),
        stats=UserStats(
            total=stats["total"],
            activos=stats["active"],
            inactivos=stats["inactive"],
            por_rol=stats["by_role"],
        ),
    )


@router.get("/usuarios/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission("usuarios", "ver")),
) -> UserResponse:
    return user_response(request, _get_target(request.app.state.user_store, user_id))


@router.post("/usuarios", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_permission("usuarios", "crear")),
) -> UserResponse:
    """Create an operator account and give it the default permissions of its role."""
    state = request.app.state
    user_store: UserStore = state.user_store
    new_user = User(
        username=body.username,
        email=body.email,
        name=body.name,
        role=body.role,
        hashed_password=hash_password(body.password),
        is_active=body.is_active,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail=_CONFLICT) from exc
    created = user_store.get_by_id(user_id)
    state.authz.assign_default_permissions(created)
    return user_response(request, created)


@router.put("/usuarios/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    current_user: User = Depends(require_permission("usuarios", "editar")),
) -> UserResponse:
    """Partially update an operator account.

    A username or email may be kept as is; only another user's value
    conflicts. A new password is handled like an admin reset: the owner must
    change it at next login. Sessions are revoked on a password change and on
    deactivation. Grants stay as they are on a role change; the permission
    reset route applies the new role's defaults.
    """
    state = request.app.state
    user_store: UserStore = state.user_store
    target = _get_target(user_store, user_id)

    changes = body.model_dump(exclude_none=True, exclude={"password"})
    deactivating = target.is_active and changes.get("is_active") is False
    demoting = target.is_administrator and changes.get("role", Role.ADMINISTRATOR) != Role.ADMINISTRATOR
    if deactivating or demoting:
        _guard_last_admin(user_store, target, current_user)

    try:
        user_store.update_user(target.id, **changes)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail=_CONFLICT) from exc

    if body.password is not None:
        state.guard.record_password_change(target, hash_password(body.password), forced=True)
    if body.password is not None or deactivating:
        state.guard.revoke_all_tokens(target)
    return user_response(request, user_store.get_by_id(target.id))


@router.post("/usuarios/{user_id}/toggle-activo", response_model=UserResponse)
def toggle_active(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission("usuarios", "editar")),
) -> UserResponse:
    state = request.app.state
    user_store: UserStore = state.user_store
    target = _get_target(user_store, user_id)
    if target.is_active:
        _guard_last_admin(user_store, target, current_user)
    user_store.update_user(target.id, is_active=not target.is_active)
    target.is_active = not target.is_active
    if not target.is_active:
        state.guard.revoke_all_tokens(target)
    return user_response(request, target)


@router.post("/usuarios/{user_id}/cambiar-password", response_model=MessageResponse)
def reset_password(
    request: Request,
    user_id: int,
    body: AdminPasswordReset,
    current_user: User = Depends(require_permission("usuarios", "editar")),
) -> MessageResponse:
    """Set a new password for another operator; they must change it at next login."""
    state = request.app.state
    target = _get_target(state.user_store, user_id)
    state.guard.record_password_change(target, hash_password(body.password), forced=True)
    state.guard.revoke_all_tokens(target)
    return MessageResponse(message="Password updated.")


@router.post("/usuarios/{user_id}/desbloquear", response_model=UserResponse)
def unlock_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission("usuarios", "editar")),
) -> UserResponse:
    state = request.app.state
    target = _get_target(state.user_store, user_id)
    state.guard.unlock(target)
    return user_response(request, target)


@router.delete("/usuarios/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission("usuarios", "eliminar")),
) -> Response:
    user_store: UserStore = request.app.state.user_store
    target = _get_target(user_store, user_id)
    _guard_last_admin(user_store, target, current_user)
    user_store.delete_user(target.id)
    return Response(status_code=204)
