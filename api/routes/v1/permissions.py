"""
api/routes/v1/permissions.py -- Permission catalog and per-user grant management.

Routes:
  GET  /api/v1/permisos                      -- full catalog (requires auth)
  GET  /api/v1/permisos/rol/{rol}            -- default template of a role (requires auth)
  GET  /api/v1/usuarios/{id}/permisos        -- a user's formatted permissions (usuarios:ver)
  PUT  /api/v1/usuarios/{id}/permisos        -- replace a user's grant set (usuarios:asignar_permisos)
  POST /api/v1/usuarios/{id}/permisos/reset  -- reset to role defaults (usuarios:asignar_permisos)

Unknown (module, action) pairs in a PUT body are dropped silently; the
response shows what was actually stored.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import PermissionGroup, PermissionsUpdate
from auth.dependencies import get_current_user, require_permission
from auth.models import Role, User
from auth.permissions import AuthorizationService
from auth.store import UserStore

router = APIRouter()


def _get_target(request: Request, user_id: int) -> User:
    user_store: UserStore = request.app.state.user_store
    target = user_store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return target


@router.get("/permisos", response_model=list[PermissionGroup])
def list_catalog(request: Request, current_user: User = Depends(get_current_user)) -> list[PermissionGroup]:
    """Every module with every valid action, in catalog order."""
    authz: AuthorizationService = request.app.state.authz
    return [PermissionGroup(**g) for g in authz.catalog.grouped()]


@router.get("/permisos/rol/{rol}", response_model=list[PermissionGroup])
def role_permissions(
    request: Request,
    rol: str,
    current_user: User = Depends(get_current_user),
) -> list[PermissionGroup]:
    """Default permission template of a role. Administrators get the whole catalog."""
    try:
        role = Role(rol)
    except ValueError as exc:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Role not found."},
        ) from exc
    authz: AuthorizationService = request.app.state.authz
    return [PermissionGroup(**g) for g in authz.role_permissions(role)]


@router.get("/usuarios/{user_id}/permisos", response_model=list[PermissionGroup])
def get_user_permissions(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission("usuarios", "ver")),
) -> list[PermissionGroup]:
    target = _get_target(request, user_id)
    authz: AuthorizationService = request.app.state.authz
    return [PermissionGroup(**g) for g in authz.get_formatted_permissions(target)]


@router.put("/usuarios/{user_id}/permisos", response_model=list[PermissionGroup])
def update_user_permissions(
    request: Request,
    user_id: int,
    body: PermissionsUpdate,
    current_user: User = Depends(require_permission("usuarios", "asignar_permisos")),
) -> list[PermissionGroup]:
    """Replace the target's explicit grant set with the catalog-valid part of the body."""
    target = _get_target(request, user_id)
    authz: AuthorizationService = request.app.state.authz
    authz.sync_permissions(target, [g.model_dump() for g in body.permisos])
    return [PermissionGroup(**g) for g in authz.get_formatted_permissions(target)]


@router.post("/usuarios/{user_id}/permisos/reset", response_model=list[PermissionGroup])
def reset_user_permissions(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission("usuarios", "asignar_permisos")),
) -> list[PermissionGroup]:
    """Reset the target's grant set to the default template of their role."""
    target = _get_target(request, user_id)
    authz: AuthorizationService = request.app.state.authz
    authz.assign_default_permissions(target)
    return [PermissionGroup(**g) for g in authz.get_formatted_permissions(target)]
