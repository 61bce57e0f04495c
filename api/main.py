"""
api/main.py -- FastAPI application entry point for the Spend Tracker auth service.

Exposes sign-in, MFA enrollment, session management and login history over
HTTP for the Spend Tracker web client.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Settings are loaded once, at import, before the app is built. A missing or
short SECRET_KEY fails here and the process does not start. Lifespan builds
the stores and services from those settings and tears them down
symmetrically on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, FieldError, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.security import router as security_router
from audit.recorder import LoginAuditRecorder
from audit.store import LoginHistoryStore
from auth.login import LoginService
from auth.mfa import MFAService
from auth.store import UserStore
from auth.tokens import TokenService
from core.config import get_settings
from core.errors import AuthServiceError

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("spendtracker.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. TokenService first -- validates the signing key; SigningKeyError
         aborts startup before any store is opened.
      2. Stores second -- credential store and login history store.
      3. Services last -- they hold references to the stores.
    """
    # Startup
    logger.info("Spend Tracker auth API starting up")
    app.state.token_service = TokenService(settings)
    app.state.user_store = UserStore(db_url=settings.auth_db_url, timeout_seconds=settings.store_timeout_seconds)
    app.state.history_store = LoginHistoryStore(
        db_url=settings.audit_db_url, timeout_seconds=settings.store_timeout_seconds
    )
    app.state.audit_recorder = LoginAuditRecorder(app.state.history_store, settings)
    app.state.mfa_service = MFAService(app.state.user_store, settings)
    app.state.login_service = LoginService(
        app.state.user_store,
        app.state.token_service,
        app.state.mfa_service,
        app.state.audit_recorder,
        settings,
    )
    if not app.state.user_store.has_users():
        logger.warning("No users exist yet -- create them with: python cli.py create-user EMAIL")
    logger.info("Auth initialized (audit_enabled=%s, geoip_enabled=%s)", settings.audit_enabled, settings.geoip_enabled)

    yield

    # Shutdown
    app.state.audit_recorder.close()
    app.state.history_store.close()
    app.state.user_store.close()
    logger.info("Spend Tracker auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Spend Tracker Auth API",
    description="Sign-in, MFA, sessions and login history for Spend Tracker.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# One access-log line per request. Only method, path, status, latency and
# client address are logged -- never headers, cookies or bodies.
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
app.include_router(security_router, prefix="/api/v1", tags=["Security"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    fields: list[FieldError] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=code, message=message, detail=detail, fields=fields)
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(AuthServiceError)
async def auth_service_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
    """Render a typed service error with its own status and code."""
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    response = _error(exc.status_code, exc.code, exc.message)
    if exc.status_code == 503:
        response.headers["Retry-After"] = "1"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one entry per rejected field when body or query params fail validation.

    Only the location and pydantic's message are kept. The rejected input is
    dropped so a password never comes back in an error body.
    """
    fields = [
        FieldError(loc=".".join(str(part) for part in err.get("loc", ())), msg=str(err.get("msg", "")))
        for err in exc.errors()
    ]
    return _error(400, "validation_error", "Request validation failed.", fields=fields)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and credential-store reachability."""
    database = "ok"
    try:
        request.app.state.user_store.has_users()
    except AuthServiceError:
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components={"app": "ok", "database": database})
