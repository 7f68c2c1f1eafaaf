"""
api/main.py -- FastAPI application entry point for SitePass.

Exposes the session lifecycle engine (auth/sessions.py) over HTTP for the
construction portal's web and mobile clients.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. BypassAwareSlowAPIMiddleware -- global per-IP ceiling from api.limiter

Lifespan builds the store engine, the SessionService and the event
dispatcher, starts the maintenance purge task, and tears all of it down
symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import BypassAwareSlowAPIMiddleware, limiter, seconds_until_reset
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.clock import Clock
from auth.errors import AuthError, RateLimited, TokenInvalid, Unauthenticated
from auth.events import EventDispatcher, audit_log_listener
from auth.sessions import SessionService
from auth.store import RefreshTokenStore, SqlAttemptStore, SqlRateWindowStore, UserStore, create_store_engine
from auth.tokens import clear_refresh_cookie
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sitepass.api")

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def init_app_state(
    app: FastAPI,
    settings: Settings,
    engine: Engine,
    clock: Clock | None = None,
    dispatcher: EventDispatcher | None = None,
) -> SessionService:
    """Attach settings, engine and a SessionService built on engine to app.state.

    Shared by the real lifespan and the test lifespan so both run the exact
    same composition.
    """
    sessions = SessionService.from_settings(
        settings,
        users=UserStore(engine=engine),
        refresh_tokens=RefreshTokenStore(engine=engine),
        attempt_store=SqlAttemptStore(engine=engine),
        rate_store=SqlRateWindowStore(engine=engine),
        dispatcher=dispatcher,
        clock=clock,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.sessions = sessions
    return sessions


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Run the maintenance purge every interval_seconds.

    The purge runs in a worker thread so the SQL never blocks the event loop.
    A failed purge is logged (by the service) and retried next cycle.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.sessions.purge_expired)
        except AuthError:
            logger.warning("Maintenance purge skipped; store unavailable")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Engine first -- creates the schema before any store touches it.
      2. Dispatcher second -- listeners run on a small thread pool so audit
         delivery never holds a request open.
      3. Purge task last -- references app.state.sessions.
    """
    settings = get_settings()
    logger.info("SitePass API starting up (environment=%s)", settings.environment)
    engine = create_store_engine(settings.database_url) if settings.database_url else create_store_engine()

    executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="sitepass-events")
    dispatcher = EventDispatcher(executor=executor)
    dispatcher.subscribe(audit_log_listener)

    sessions = init_app_state(app, settings, engine, dispatcher=dispatcher)
    logger.info("Session engine initialized (users_present=%s)", sessions.users.has_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    executor.shutdown(wait=True)
    engine.dispose()
    logger.info("SitePass API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="SitePass API",
    description="Session lifecycle for the construction portal: login, refresh rotation, logout.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None if _settings.is_production else "/docs",
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
    allowed_hosts=_settings.allowed_hosts,
)

# allow_credentials is required for the browser to send the refresh cookie
# on cross-origin calls to /auth/refresh and /auth/logout.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", _settings.rate_limit_bypass_header],
    expose_headers=["Retry-After"],
    max_age=3600,
)

app.add_middleware(BypassAwareSlowAPIMiddleware)

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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a session engine outcome.

    RateLimited carries Retry-After. A rejected refresh credential also
    clears the cookie so the client stops presenting it.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    elif isinstance(exc, TokenInvalid):
        clear_refresh_cookie(response, request.app.state.settings)
    elif isinstance(exc, Unauthenticated):
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the global per-IP ceiling is exceeded.

    Must stay synchronous: SlowAPIMiddleware calls only sync handlers and
    substitutes its own response for a coroutine.

    Retry-After is the time left in the current window, read back from the
    limiter storage.
    """
    window = int(exc.limit.limit.get_expiry()) if getattr(exc, "limit", None) else 60
    retry_after = seconds_until_reset(request, window)
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Input values are left out of the detail; a password must not be echoed
    back in an error body.
    """
    errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(errors),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
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

    The raw exception is written to the log only, never to the response body.
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
# regardless of router registration state. Exempt from the global ceiling:
# load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
@limiter.exempt
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and a database round-trip check."""
    components = {"app": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
