"""
api/main.py -- FastAPI application entry point for the FlightSchool API.

Exposes the security gateway and the tenant-scoped routes over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. log_requests          -- one access log line per request
  5. security_headers      -- CSP, framing, sniffing, referrer and feature policy

The gateway itself (API key -> session -> CSRF -> authorization) is not
middleware: it runs as route dependencies from gateway/dependencies.py, so
each route states exactly which layers it needs.

Lifespan builds every collaborator from one Settings instance and places it
on app.state (startup), then closes the credential store (shutdown).
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.api_keys import router as api_keys_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.schools import router as schools_router
from core.config import HttpSettings, Settings, get_settings
from gateway.api_keys import ApiKeyGate
from gateway.authorization import AuthorizationResolver
from gateway.csrf import CSRF_HEADER, CsrfGuard
from gateway.mfa import LoginFlow
from gateway.session import SessionAuthenticator
from gateway.store import CredentialStore
from gateway.tokens import TokenService

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("flightschool.api")


# ---------------------------------------------------------------------------
# Collaborator wiring
# ---------------------------------------------------------------------------


def build_gateway(app: FastAPI, settings: Settings, store: CredentialStore, tokens: TokenService) -> None:
    """Place the settings, store, token service and every gateway layer on app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    graph; only the store and the token service (clock) differ.
    """
    app.state.settings = settings
    app.state.credential_store = store
    app.state.token_service = tokens
    app.state.api_key_gate = ApiKeyGate(store, tokens)
    app.state.session_authenticator = SessionAuthenticator(tokens)
    app.state.csrf_guard = CsrfGuard(
        tokens,
        exempt_paths=settings.csrf_exempt_paths,
        exempt_patterns=settings.csrf_exempt_patterns,
        protected_get_prefixes=settings.csrf_protected_get_prefixes,
    )
    app.state.login_flow = LoginFlow(
        store,
        tokens,
        issuer=settings.mfa_issuer,
        pending_ttl=timedelta(seconds=settings.pending_auth_ttl_seconds),
        max_attempts=settings.mfa_max_attempts,
    )
    app.state.authorization_resolver = AuthorizationResolver(store)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    get_settings() is called here and nowhere else. The signing secrets and
    the database URL reach the token service and the credential store through
    their constructors.
    """
    logger.info("FlightSchool API starting up")
    settings = get_settings()
    store = CredentialStore(settings.database_url)
    tokens = TokenService.from_settings(settings)
    build_gateway(app, settings, store, tokens)
    purged = store.purge_pending_auth(tokens.now())
    logger.info("Gateway initialized (users=%d, stale pending logins purged=%d)", store.count_users(), purged)

    yield

    store.close()
    logger.info("FlightSchool API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="FlightSchool API",
    description="Multi-tenant flight school management backend.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_http_settings = HttpSettings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_http_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_http_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key", CSRF_HEADER],
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
# Security headers middleware
# ---------------------------------------------------------------------------

_SECURITY_HEADERS = {
    "Content-Security-Policy": (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline' 'unsafe-eval'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data: https:; "
        "font-src 'self' data:; "
        "connect-src 'self' https:; "
        "frame-ancestors 'none';"
    ),
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": (
        "accelerometer=(), camera=(), geolocation=(), gyroscope=(), "
        "magnetometer=(), microphone=(), payment=(), usb=()"
    ),
}

_HSTS = "max-age=31536000; includeSubDomains"


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    # HSTS only means something over TLS.
    if request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", _HSTS)
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(api_keys_router, prefix="/api/v1", tags=["API Keys"])
app.include_router(schools_router, prefix="/api/v1", tags=["Schools"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="too_many_requests",
                message="Too many requests.",
                detail=str(exc.detail),
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
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Gateway rejections arrive with detail={"code", "message"} (a dict) and are
    used directly as the error field. Headers set on the exception (e.g.
    Cache-Control on login failures) are carried over.
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
    """Catch-all handler for unexpected server errors.

    Persistence and crypto failures end up here. The exception is logged with
    the request context; the client only receives a generic message.
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
# Defined directly in main.py (not in a router) so it is always reachable.
# Public: no API key, no rate limit.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    try:
        request.app.state.credential_store.ping()
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        return HealthResponse(version=API_VERSION, status="degraded", database="unreachable")
    return HealthResponse(version=API_VERSION)
