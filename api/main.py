"""
api/main.py -- FastAPI application entry point for tokenauth.

Exposes the auth core over HTTP: signin, token lifecycle, users, groups and
password restore. Route handlers live in api/routes/v1/auth.py; this module
owns assembly, middleware and error translation.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the AuthStore and the AuthContext on startup and closes the
store on shutdown.
"""

from __future__ import annotations

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

from api.dependencies import get_context, require
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.context import AuthConfig, AuthContext
from auth.errors import (
    AuthError,
    AuthRequired,
    CodeMismatch,
    DeliveryFailure,
    DuplicateLogin,
    Forbidden,
    GroupNotFound,
    IntegrityViolation,
    InvalidCredentials,
    InvalidToken,
    MissingCredential,
    TokenExpired,
    UserNotFound,
    WeakPassword,
)
from auth.models import Principal
from auth.store import AuthStore
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokenauth.api")

# ---------------------------------------------------------------------------
# Error -> status mapping
#
# Looked up along the exception's MRO, so a subclass of a mapped error gets
# its parent's status. Anything unmapped is a 500.
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: dict[type[AuthError], int] = {
    AuthRequired: 401,
    InvalidToken: 401,
    TokenExpired: 401,
    InvalidCredentials: 401,
    Forbidden: 403,
    UserNotFound: 404,
    GroupNotFound: 404,
    WeakPassword: 400,
    DuplicateLogin: 400,
    CodeMismatch: 400,
    MissingCredential: 400,
    IntegrityViolation: 500,
    DeliveryFailure: 500,
}


def status_for(exc: AuthError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return 500


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the store and the runtime config; dispose the engine on shutdown."""
    settings = get_settings()
    logger.info("tokenauth API starting up")
    store = AuthStore(settings.database_url) if settings.database_url else AuthStore()
    app.state.auth = AuthContext(config=AuthConfig.from_settings(settings), store=store)
    logger.info(
        "Auth initialized (default_expire=%ss, maximum_expire=%s)",
        settings.default_expire_seconds,
        settings.maximum_expire_seconds or "uncapped",
    )

    yield

    store.close()
    logger.info("tokenauth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="tokenauth API",
    description="Opaque bearer tokens, permission checks, single-use signin codes and password restore.",
    version=API_VERSION,
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

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
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


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
def docs(caller: Principal = Depends(require())):
    """Swagger UI -- requires a valid bearer token."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="tokenauth API")


@app.get("/redoc", include_in_schema=False)
def redoc(caller: Principal = Depends(require())):
    """ReDoc UI -- requires a valid bearer token."""
    return get_redoc_html(openapi_url="/openapi.json", title="tokenauth API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate a typed auth failure into its HTTP status.

    Server-side failures are logged with their detail and answered with a
    generic message only.
    """
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.detail)
        return _error(status_code, exc.code, type(exc).message)
    response = _error(status_code, exc.code, type(exc).message, exc.detail)
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
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
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit and no authentication: load balancers must always reach it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(ctx: AuthContext = Depends(get_context)) -> HealthResponse:
    """Return API liveness, version and per-component status."""
    components = {"app": "ok"}
    try:
        ctx.store.ping()
        components["database"] = "ok"
    except Exception:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
