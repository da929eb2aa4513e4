"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and
authorization.

Requests authenticate with "Authorization: Bearer <token>". The token must
verify AND still have its session row (see auth/tokens.py).

try_get_current_session() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_permission(module, action) wraps get_current_user() and raises
HTTP 403 ("forbidden", carrying the denied module/action) when the
AuthorizationService says no.

Layer rule: no imports from api/ or cache/.
  This module may import from fastapi because it is part of the FastAPI
  dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from auth.audit import audit
from auth.models import User
from auth.permissions import AuthorizationService
from auth.store import UserStore
from auth.tokens import SessionTokenIssuer


@dataclass
class CurrentSession:
    user: User
    jti: str


def try_get_current_session(request: Request) -> CurrentSession | None:
    """Authenticate the request via its Bearer token. Never raises."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    tokens: SessionTokenIssuer = request.app.state.tokens
    payload = tokens.verify(auth_header[7:])
    if payload is None:
        return None
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(payload["user_id"])
    if user is None or not user.is_active:
        return None
    return CurrentSession(user=user, jti=payload["jti"])


def get_current_session(request: Request) -> CurrentSession:
    session = try_get_current_session(request)
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return session


def get_current_user(session: CurrentSession = Depends(get_current_session)) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    return session.user


def require_permission(module: str, action: str) -> Callable[..., User]:
    """Dependency factory gating a route on one (module, action) grant.

    Use as a FastAPI dependency:
        @router.put("/usuarios/{id}/permisos")
        async def route(user: User = Depends(require_permission("usuarios", "asignar_permisos"))): ...
    """

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        authz: AuthorizationService = request.app.state.authz
        if not authz.has_permission(user, module, action):
            audit(
                "forbidden",
                level=logging.WARNING,
                user_id=user.id,
                username=user.username,
                module=module,
                action=action,
                path=request.url.path,
            )
            raise HTTPException(
                status_code=403,
                detail={
                    "code": "forbidden",
                    "message": f"Permission '{module}:{action}' is required.",
                    "detail": f"{module}:{action}",
                },
            )
        return user

    return dependency
