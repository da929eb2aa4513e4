"""
api/main.py -- FastAPI application entry point for PawnDesk.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. Request logging  -- method, path, status, latency, client
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan wires the security core once per process and hangs it on app.state:
  user_store  UserStore              durable users, catalog rows, grants, sessions
  cache       CounterCache           expiring IP counters
  tokens      SessionTokenIssuer     issue / verify / revoke session tokens
  guard       AccountSecurityGuard   lockout state machine
  authz       AuthorizationService   role bypass + explicit grants
Shutdown cancels the purge task and closes both stores.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.permissions import router as permissions_router
from api.routes.v1.users import router as users_router
from auth.attempts import AttemptTracker
from auth.catalog import default_catalog
from auth.permissions import AuthorizationService
from auth.security import AccountSecurityGuard
from auth.store import UserStore
from auth.tokens import SessionTokenIssuer
from cache.store import CounterCache
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pawndesk.api")

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def wire_security(app: FastAPI, user_store: UserStore, cache: CounterCache) -> None:
    """Build the security services on top of the two stores and attach them to app.state.

    Also seeds the permission catalog rows, which is idempotent.
    """
    settings = get_settings()
    app.state.user_store = user_store
    app.state.cache = cache
    app.state.tokens = SessionTokenIssuer(user_store)
    app.state.guard = AccountSecurityGuard(
        user_store,
        AttemptTracker(cache),
        app.state.tokens,
        password_max_age_days=settings.password_max_age_days,
    )
    app.state.authz = AuthorizationService(user_store, default_catalog())
    created = app.state.authz.seed_catalog()
    if created:
        logger.info("Permission catalog seeded (%d new rows)", created)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop expired IP counters and expired session rows every 30 minutes."""
    while True:
        await asyncio.sleep(30 * 60)
        app.state.cache.purge_expired()
        app.state.user_store.purge_expired_sessions()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    logger.info("PawnDesk API starting up")
    wire_security(app, UserStore(settings.database_url), CounterCache(settings.cache_path))
    logger.info("Security core initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.cache.close()
    app.state.user_store.close()
    logger.info("PawnDesk API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="PawnDesk API",
    description="Back office for a pawn and lending business: authentication security and authorization.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(permissions_router, prefix="/api/v1", tags=["Permissions"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Route handlers raise HTTPException with a {"code", "message"} dict as detail.

    Registered on the Starlette base class so router-level 404 and 405
    responses use the same envelope.

    A dict detail is used directly as the error field; anything else is
    wrapped in an ErrorDetail.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler. The traceback goes to the log, never to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint -- no auth, no rate limit
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    database = "ok"
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:  # noqa: BLE001
        logger.exception("Health check database query failed")
        database = "error"
    return HealthResponse(version=__version__, components={"app": "ok", "database": database})
