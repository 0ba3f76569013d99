"""
api/main.py -- FastAPI application entry point for the membership site.

Run with:  uvicorn asgi:app --reload
           python main.py runserver

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces the rate limits from api.limiter
  3. SessionMiddleware     -- signed cookie holding the one-shot flash message

Lifespan opens the database, seeds the access rule table and wires every
store onto app.state; shutdown disposes of the engine.

This module owns only the operational endpoints (/health, /stop-process).
The site itself is the catch-all dispatcher in web/routes.py, mounted by
asgi.py together with its handler registry.
"""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from access.catalog import initialize_access_rules
from access.resolver import RequestResolver
from access.store import RequestStore
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, StopResponse
from auth.credentials import CredentialStore
from auth.dependencies import is_local_request
from auth.roles import RoleStore
from auth.service import MembershipService
from auth.store import UserStore
from core.config import Settings, get_settings
from core.database import make_engine, utcnow

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("membership.api")

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def init_membership(app: FastAPI, engine: Engine, settings: Settings, clock=utcnow) -> None:
    """Build the stores on app.state and bring the access rule table up to date.

    Raises RegistryMismatch when a handler registry has been attached
    (app.state.handler_registry, set by asgi.py) and it disagrees with the
    request table.
    """
    app.state.settings = settings
    app.state.engine = engine
    app.state.user_store = UserStore(engine, clock=clock)
    app.state.role_store = RoleStore(engine, clock=clock)
    app.state.request_store = RequestStore(engine, clock=clock)
    app.state.credential_store = CredentialStore(
        engine,
        app.state.user_store,
        settings.password_rules(),
        rounds=settings.bcrypt_rounds,
        clock=clock,
    )
    app.state.membership = MembershipService(
        engine,
        app.state.user_store,
        app.state.credential_store,
        app.state.role_store,
        settings,
    )
    app.state.resolver = RequestResolver(app.state.request_store)

    initialize_access_rules(engine, app.state.request_store, app.state.role_store)

    registry = getattr(app.state, "handler_registry", None)
    if registry is not None:
        registry.validate_against(app.state.request_store.list_requests())
        logger.info("Handler registry matches the request table (%d handlers)", len(registry.keys()))


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database and wire the stores; dispose of the engine on shutdown."""
    settings = get_settings()
    logger.info("%s %s starting up", settings.app_name, settings.app_version)
    engine = make_engine(settings.database_url)
    init_membership(app, engine, settings)
    logger.info("Membership initialized (%d user(s))", app.state.user_store.count_users())

    yield

    engine.dispose()
    logger.info("%s shutdown complete", settings.app_name)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title=_settings.app_name,
    version=_settings.app_version,
    lifespan=lifespan,
    # No public API surface: every other path belongs to the dispatcher.
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="flash",
    same_site="lax",
    https_only=_settings.secure_cookies,
)

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
# Exception handlers
#
# All handlers return the same ErrorResponse envelope.
# ---------------------------------------------------------------------------


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

    The traceback goes to the log only; the client gets a generic message.
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
# Operational endpoints
#
# Registered on the app before asgi.py mounts the catch-all dispatcher, so
# they always win the route match. Not rate limited.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    components = {"app": "ok", "database": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=request.app.state.settings.app_version, components=components)


@app.post("/stop-process", tags=["Health"])
async def stop_process(request: Request) -> StopResponse:
    """Ask the server to shut down gracefully. Localhost peers only.

    Anyone else gets the same 404 as an unknown path.
    """
    if not is_local_request(request):
        raise HTTPException(status_code=404, detail=f"{request.url.path} - Not found")
    logger.warning("Stop requested from %s", request.client.host if request.client else "unknown")
    os.kill(os.getpid(), signal.SIGINT)
    return StopResponse()
