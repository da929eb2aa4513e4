"""
api/routes/v1/auth.py -- Login, logout, password change and session endpoints.

Routes:
  POST /api/v1/auth/login            -- password login; returns a Bearer token
  GET  /api/v1/auth/me               -- current user info (requires auth)
  POST /api/v1/auth/logout           -- revoke the token used for this request
  POST /api/v1/auth/logout-all       -- revoke every token of the current user
  POST /api/v1/auth/change-password  -- self-service password change
  POST /api/v1/auth/refresh-token    -- swap the current token for a new one

Login outcome -> HTTP status:
  ip_blocked           429  retry_after = lockout minutes
  unknown_identity     401  same body as invalid_credentials
  account_locked       423  retry_after = minutes until the lock lifts
  invalid_credentials  401  attempts_remaining + hint once <= 3 remain
  inactive_account     403
  success              200  require_password_change when flagged

Security:
  POST /login is additionally rate-limited per IP by slowapi.
  Cache-Control: no-store on every login response.
  Unknown username and wrong password return the same body.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi.util import get_remote_address

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    ErrorDetail,
    LoginErrorResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    TokenResponse,
    UserResponse,
)
from api.routes.v1.users import user_response
from auth.audit import audit
from auth.dependencies import CurrentSession, get_current_session
from auth.login import LoginOutcome, LoginResult, authenticate
from auth.passwords import violations_for
from auth.tokens import hash_password, verify_password
from core.config import get_settings

router = APIRouter()

_REFUSALS: dict[LoginOutcome, tuple[int, str, str]] = {
    LoginOutcome.IP_BLOCKED: (429, "ip_blocked", "Too many failed attempts. Try again later."),
    LoginOutcome.UNKNOWN_IDENTITY: (401, "bad_credentials", "Invalid credentials."),
    LoginOutcome.INVALID_CREDENTIALS: (401, "bad_credentials", "Invalid credentials."),
    LoginOutcome.ACCOUNT_LOCKED: (423, "account_locked", "Account temporarily locked."),
    LoginOutcome.INACTIVE_ACCOUNT: (403, "inactive_account", "Inactive user. Contact the administrator."),
}


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _refused(result: LoginResult) -> JSONResponse:
    status, code, message = _REFUSALS[result.outcome]
    if result.outcome is LoginOutcome.ACCOUNT_LOCKED:
        message = f"Account temporarily locked. Try again in {result.retry_after_minutes} minutes."
    elif result.show_attempts_hint:
        message = f"Invalid credentials. {result.attempts_remaining} attempts remaining."
    body = LoginErrorResponse(
        error=ErrorDetail(code=code, message=message),
        retry_after=result.retry_after_minutes,
        attempts_remaining=result.attempts_remaining if result.show_attempts_hint else None,
        locked=result.outcome is LoginOutcome.ACCOUNT_LOCKED,
    )
    resp = JSONResponse(status_code=status, content=body.model_dump(exclude_none=True))
    if result.retry_after_minutes is not None:
        resp.headers["Retry-After"] = str(result.retry_after_minutes * 60)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_login_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username (or email) and password; return a session token."""
    state = request.app.state
    ip = get_remote_address(request)
    result = authenticate(state.guard, state.user_store, body.username, body.password, ip)
    if not result.ok:
        return _refused(result)

    issued = state.tokens.issue(result.user)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=issued.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=issued.expires_in,
            user=user_response(request, result.user),
            require_password_change=result.password_change_required,
        ).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, session: CurrentSession = Depends(get_current_session)) -> UserResponse:
    """Return the authenticated operator with their formatted permissions."""
    return user_response(request, session.user)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, session: CurrentSession = Depends(get_current_session)) -> MessageResponse:
    """Revoke only the token that authenticated this request."""
    request.app.state.tokens.revoke_current(session.jti)
    audit("logout", user_id=session.user.id, username=session.user.username, ip=get_remote_address(request))
    return MessageResponse(message="Session closed.")


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request, session: CurrentSession = Depends(get_current_session)) -> MessageResponse:
    """Revoke every token of the current operator, on every device."""
    request.app.state.guard.revoke_all_tokens(session.user)
    return MessageResponse(message="Sessions closed on all devices.")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    session: CurrentSession = Depends(get_current_session),
) -> MessageResponse:
    """Change the caller's password.

    Requires the current password, enforces the strength policy plus
    "different from current", clears force_password_change, and revokes
    every other session of the user.
    """
    state = request.app.state
    user = session.user
    if not verify_password(body.current_password, user.hashed_password or ""):
        raise HTTPException(
            status_code=401,
            detail={"code": "bad_current_password", "message": "The current password is incorrect."},
        )
    errors = violations_for(body.new_password, current=body.current_password)
    if errors:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "weak_password",
                "message": "The password does not meet the security requirements.",
                "detail": " ".join(errors),
            },
        )
    state.guard.record_password_change(user, hash_password(body.new_password))
    state.tokens.revoke_others(user, keep_jti=session.jti)
    return MessageResponse(message="Password updated.")


@router.post("/auth/refresh-token", response_model=TokenResponse)
def refresh_token(request: Request, session: CurrentSession = Depends(get_current_session)) -> TokenResponse:
    """Revoke the current token and issue a fresh one."""
    tokens = request.app.state.tokens
    tokens.revoke_current(session.jti)
    issued = tokens.issue(session.user)
    return TokenResponse(access_token=issued.token, expires_in=issued.expires_in)
