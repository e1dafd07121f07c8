"""
api/main.py -- FastAPI application entry point for workgate.

Exposes the session & authorization authority over HTTP: signup/login,
refresh-token rotation, device sessions, workspace membership, permission
overrides and invitations.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every store and service once, from one Settings instance,
and hangs them on app.state. Routes read collaborators from app.state; no
service reads configuration on its own. configure_services() is shared with
the test suite so tests wire exactly the same object graph around in-memory
stores.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.invitations import router as invitations_router
from api.routes.v1.sessions import router as sessions_router
from api.routes.v1.workspaces import router as workspaces_router
from auth.credentials import CredentialIssuer, TokenRotationAuthority
from auth.dependencies import get_current_user
from auth.models import User
from auth.sessions import DeviceSessionTracker
from auth.store import CredentialStore
from auth.tokens import dummy_hash
from auth.verification import EmailVerifier
from core.audit import AuditLog
from core.clock import Clock, utc_now
from core.config import Settings, get_settings
from core.errors import Unauthorized, WorkgateError
from workspace.invitations import InvitationService
from workspace.resolver import PermissionResolver
from workspace.service import WorkspaceService
from workspace.store import WorkspaceStore

_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("workgate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def configure_services(
    app: FastAPI,
    settings: Settings,
    credential_store: CredentialStore,
    workspace_store: WorkspaceStore,
    audit: AuditLog,
    clock: Clock = utc_now,
) -> None:
    """Build the service graph around the given stores and attach it to app.state."""
    app.state.settings = settings
    app.state.clock = clock
    app.state.credential_store = credential_store
    app.state.workspace_store = workspace_store
    app.state.audit = audit

    issuer = CredentialIssuer(credential_store, settings, clock)
    app.state.issuer = issuer
    app.state.rotation = TokenRotationAuthority(credential_store, issuer, clock)
    app.state.session_tracker = DeviceSessionTracker(credential_store, clock)
    app.state.verifier = EmailVerifier(credential_store, settings, clock)

    resolver = PermissionResolver(workspace_store, audit)
    app.state.resolver = resolver
    app.state.workspaces = WorkspaceService(workspace_store, resolver, audit, clock)
    app.state.invitations = InvitationService(workspace_store, credential_store, settings, audit, clock)

    # Warm the login timing-equalization hash at the configured cost.
    dummy_hash(settings.bcrypt_rounds)


# ---------------------------------------------------------------------------
# Background reaper task
# ---------------------------------------------------------------------------


def run_reaper(app: FastAPI) -> tuple[int, int]:
    """One sweep: dead refresh tokens, then expired device sessions."""
    tokens = app.state.rotation.reap_expired()
    sessions = app.state.session_tracker.cleanup_expired()
    if tokens or sessions:
        logger.info("Reaper removed %d refresh tokens and %d device sessions", tokens, sessions)
    return tokens, sessions


async def _reaper_loop(app: FastAPI, interval_seconds: float) -> None:
    """Garbage-collect expired credentials every `interval_seconds`.

    Both deletes are delete-if-expired predicates, so running this in more
    than one worker is harmless. A failed sweep is logged and retried on the
    next tick; it never takes the loop down.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            run_reaper(app)
        except SQLAlchemyError:
            logger.warning("Reaper sweep failed", exc_info=True)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open stores, wire services and start the reaper; undo it all on shutdown."""
    logger.info("workgate API starting up")
    settings = get_settings()
    credential_store = CredentialStore()
    workspace_store = WorkspaceStore()
    audit = AuditLog()
    configure_services(app, settings, credential_store, workspace_store, audit)
    logger.info(
        "Services initialized (access ttl=%s, refresh ttl=%s, single-use invitations=%s)",
        settings.access_token_ttl,
        settings.refresh_token_ttl,
        settings.invitation_single_use,
    )
    app.state.reaper_task = asyncio.create_task(_reaper_loop(app, settings.reaper_interval.total_seconds()))

    yield

    app.state.reaper_task.cancel()
    credential_store.close()
    workspace_store.close()
    audit.close()
    logger.info("workgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="workgate API",
    description="Session and authorization authority: credentials, device sessions, workspace permissions.",
    version=_VERSION,
    lifespan=lifespan,
    # Auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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
app.include_router(sessions_router, prefix="/api/v1", tags=["Device Sessions"])
app.include_router(workspaces_router, prefix="/api/v1", tags=["Workspaces"])
app.include_router(invitations_router, prefix="/api/v1", tags=["Invitations"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="workgate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="workgate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(WorkgateError)
async def workgate_error_handler(request: Request, exc: WorkgateError) -> JSONResponse:
    """Map a service-layer error to its status code and the public message.

    exc.reason (expired vs. reused token, the missing permission) is logged
    here and nowhere else. The client only ever sees client_message.
    """
    if exc.reason:
        logger.info(
            "%s on %s %s: %s",
            exc.error_code,
            request.method,
            request.url.path,
            exc.reason,
        )
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.error_code, message=exc.client_message)).model_dump(),
    )
    if isinstance(exc, Unauthorized):
        response.headers["WWW-Authenticate"] = "Bearer"
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
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
    """Return 422 with structured error when request body or query params fail validation."""
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
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405s)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
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
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus a credential-store connectivity probe."""
    database = "ok"
    try:
        with request.app.state.credential_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check: credential store unreachable", exc_info=True)
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=_VERSION,
        components={"app": "ok", "database": database},
    )
