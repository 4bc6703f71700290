"""
api/main.py -- FastAPI application entry point for Molunzaka.

Exposes the auth, authorization and profile services over HTTP.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  3. log_requests          -- one log line per request with latency

Lifespan builds the stores, the notifier and the two services on startup,
seeds the role/permission catalogue, and tears everything down on shutdown.

Response envelopes:
  success  {"message": str, "data": ...}
  error    {"message": str, "error": {"code", "message", "detail"?, "errors"?}}
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.profiles import router as profiles_router
from auth.notifications import build_notifier
from auth.roles import seed_roles_and_permissions
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings
from core.errors import AppError
from profiles.pointer import ActiveProfileStore
from profiles.service import ProfileManager
from profiles.store import ProfileStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("molunzaka.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan -- stores, seed, notifier, services
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- everything else reads from them.
      2. Role seed second -- registration assigns the default role.
      3. Services last -- they hold references to the stores and the notifier.
    """
    logger.info("Molunzaka API starting up")
    app.state.user_store = UserStore(settings.auth_database_url)
    app.state.profile_store = ProfileStore(settings.profiles_database_url)
    seed_roles_and_permissions(app.state.user_store)
    app.state.notifier = build_notifier(settings)
    app.state.auth_service = AuthService(app.state.user_store, app.state.notifier, settings)
    app.state.profile_manager = ProfileManager(app.state.profile_store, ActiveProfileStore(), settings)
    logger.info("Stores initialized (profile limit %d)", settings.profile_limit)

    yield

    app.state.notifier.close()
    app.state.profile_store.close()
    app.state.user_store.close()
    logger.info("Molunzaka API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Molunzaka API",
    description="Accounts, bearer tokens, roles and viewing profiles for the Molunzaka streaming service.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_base_url, "http://localhost", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
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
app.include_router(profiles_router, prefix="/api/v1", tags=["Profiles"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, error: ErrorDetail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=error.message, error=error).model_dump(exclude_none=True),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render every domain error raised by auth/ and profiles/ services."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, ErrorDetail(**exc.to_dict()))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(
        429,
        ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc.detail)),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


def _field_errors(errors: list[dict[str, Any]]) -> dict[str, list[str]]:
    """Group pydantic errors by field name, e.g. {"password": ["..."]}."""
    grouped: dict[str, list[str]] = {}
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        field = ".".join(loc) or "body"
        message = str(err.get("msg", "Invalid value."))
        grouped.setdefault(field, []).append(message.removeprefix("Value error, "))
    return grouped


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with itemized field errors when the request fails validation."""
    return _error_response(
        422,
        ErrorDetail(code="validation_error", message="Validation failed.", errors=_field_errors(exc.errors())),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap framework HTTP errors (404 route not found, 405) in the error envelope."""
    return _error_response(exc.status_code, ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log. The response carries the exception text
    only when DEBUG=true; otherwise the client gets a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(
        500,
        ErrorDetail(
            code="internal_error",
            message="An unexpected error occurred.",
            detail=f"{type(exc).__name__}: {exc}" if settings.debug else None,
        ),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


def _check(name: str, ping) -> str:
    try:
        return "ok" if ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check failed for %s", name)
        return "error"


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and per-database status."""
    components = {
        "app": "ok",
        "auth_database": _check("auth_database", request.app.state.user_store.ping),
        "profiles_database": _check("profiles_database", request.app.state.profile_store.ping),
    }
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
