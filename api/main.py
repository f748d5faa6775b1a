"""
api/main.py -- FastAPI application entry point for Warden.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client for every request
  2. add_security_headers  -- nosniff, frame deny, no-referrer, no-store on /api/
  3. enforce_rate_limit    -- per-client fixed-window admission (auth/guard.py); fails closed
  4. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  5. CORSMiddleware        -- adds CORS headers for allowed browser origins
  6. SlowAPIMiddleware     -- enforces per-route limits from api.limiter

Lifespan handles startup (settings, user store, counter store, AuthService,
purge task) and shutdown (cancel purge task, close stores) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.errors import error_body
from api.limiter import limiter
from api.models import HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.dependencies import get_current_user
from auth.errors import AdmissionUnavailable, InternalAuthError
from auth.guard import RateLimiter
from auth.models import User
from auth.service import build_auth_service
from auth.store import UserStore
from core.config import get_settings
from kvstore.store import CounterStoreError, build_counter_store

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("warden.api")

# Paths that are never rate limited -- load balancers and monitors poll these.
_RATE_LIMIT_EXEMPT = ("/api/v1/health",)

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired and consumed verification/reset tokens every 6 hours.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A failed purge is logged
    and retried on the next tick.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        try:
            removed = await app.state.auth.purge_expired_tokens()
        except InternalAuthError:
            logger.warning("secret token purge failed; will retry next cycle")
            continue
        logger.info("Purged %d expired secret tokens", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Compose the auth core once and hang it on app.state.

    Startup order matters:
      1. Stores first -- the service and the rate limiter are built on them.
      2. AuthService second -- explicit constructor injection, no globals.
      3. Purge task last -- references app.state.auth.
    """
    # Startup
    logger.info("Warden API starting up")
    settings = get_settings()
    app.state.settings = settings
    app.state.user_store = UserStore(settings.database_url)
    app.state.counters = build_counter_store(settings.redis_url, settings.store_timeout_seconds)
    app.state.auth = build_auth_service(settings, app.state.user_store, app.state.counters)
    app.state.setup_required = not await asyncio.to_thread(app.state.user_store.has_users)
    if app.state.setup_required:
        logger.warning("No accounts exist yet. Create the first admin with: python main.py create-admin")
    app.state.rate_limiter = RateLimiter(
        app.state.counters,
        limit=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
        timeout=settings.store_timeout_seconds,
    )
    logger.info(
        "Auth initialized (setup_required=%s, counters=%s, rotation=%s, revocation=%s)",
        app.state.setup_required,
        "redis" if settings.redis_url else "memory",
        settings.refresh_rotation_enabled,
        settings.token_revocation_enabled,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    await app.state.counters.close()
    app.state.user_store.close()
    logger.info("Warden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Warden API",
    description="Authentication and access control: registration, login, tokens, verification and reset.",
    version=VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware both wrap the current stack, so the
# LAST registered runs FIRST on the way in. Register innermost first.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.trusted_hosts)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    """Per-client request admission, independent of authentication outcome.

    If the counter store cannot answer in time the request is denied with 503
    -- admission control fails closed.
    """
    if request.url.path in _RATE_LIMIT_EXEMPT:
        return await call_next(request)
    identity = request.client.host if request.client else "unknown"
    try:
        admission = await request.app.state.rate_limiter.hit(identity)
    except AdmissionUnavailable:
        return JSONResponse(
            status_code=503,
            content=error_body("admission_unavailable", "Service temporarily unavailable. Try again later."),
        )
    if not admission.allowed:
        return JSONResponse(
            status_code=429,
            content=error_body("rate_limited", "Too many requests.", retry_after=admission.retry_after),
            headers={"Retry-After": str(admission.retry_after)},
        )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Hardening headers on every response, including 429 and 503 from admission.

    Bodies carry tokens, so nothing under /api/ may be cached by browsers or
    proxies. HSTS is only sent when cookies are marked secure, i.e. the
    deployment is HTTPS-only.
    """
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    if _settings.secure_cookies:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
    return response


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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Warden API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Warden API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a per-route limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    return JSONResponse(
        status_code=429,
        content=error_body("rate_limited", "Too many requests.", detail=str(exc.detail), retry_after=retry_after),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with a structured error when the request body fails shape validation."""
    return JSONResponse(
        status_code=400,
        content=error_body("validation_error", "Request validation failed.", detail=str(exc.errors())),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    raise_for_failure() raises HTTPException with a {"code", "message"} dict.
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it. Headers (Retry-After,
    WWW-Authenticate) are carried over.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(f"http_{exc.status_code}", str(exc.detail)),
        headers=exc.headers,
    )


@app.exception_handler(InternalAuthError)
async def internal_auth_error_handler(request: Request, exc: InternalAuthError) -> JSONResponse:
    """Storage or hashing fault. Logged with traceback, never exposed."""
    logger.exception("Auth core failure on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("internal_error", "An unexpected error occurred."),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("internal_error", "An unexpected error occurred."),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Exempt from rate limiting.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and whether the two stores answer."""
    settings = request.app.state.settings
    database = "ok"
    try:
        await asyncio.wait_for(
            asyncio.to_thread(request.app.state.user_store.ping), timeout=settings.store_timeout_seconds
        )
    except (asyncio.TimeoutError, SQLAlchemyError) as exc:
        logger.warning("health: database check failed: %s", exc.__class__.__name__)
        database = "unavailable"
    counters = "ok"
    try:
        if not await asyncio.wait_for(request.app.state.counters.ping(), timeout=settings.store_timeout_seconds):
            counters = "unavailable"
    except (asyncio.TimeoutError, CounterStoreError, OSError) as exc:
        logger.warning("health: counter store check failed: %s", exc.__class__.__name__)
        counters = "unavailable"
    status = "ok" if database == "ok" and counters == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, database=database, counters=counters)
