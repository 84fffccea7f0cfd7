"""
api/main.py -- FastAPI application entry point for terminalpub.

Hosts the browser half of device login (web/routes.py, mounted by asgi.py)
and the health endpoint. The SSH front end runs in the same process and
reaches the identity core through app.state.gateway.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from core.limiter

Lifespan builds every component once (store, cache, HTTP client, services)
and hangs them on app.state; shutdown tears them down in reverse order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.federation import router as federation_router
from auth.device_flow import DeviceFlowCoordinator
from auth.gateway import ConnectionGateway
from auth.identity import IdentityService
from auth.providers import ProviderRegistry
from auth.session import SessionManager
from auth.sshkey import IdentityRegistry
from auth.store import AuthStore, utcnow
from auth.tokens import TokenService
from cache.store import SessionCache, new_redis
from core.background import DetachedRunner
from core.config import Settings, get_settings
from core.errors import TerminalpubError
from core.fetcher import new_client
from core.limiter import limiter

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("terminalpub.api")

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def attach_services(
    app: FastAPI,
    settings: Settings,
    store: AuthStore,
    cache: SessionCache,
    client: httpx.AsyncClient,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    """Build every identity-core component and expose it on app.state.

    Shared by the real lifespan and the test lifespan, so both wire the
    exact same object graph. transport only reaches the OAuth clients,
    which authlib creates per call.
    """
    runner = DetachedRunner(timeout=settings.background_timeout_seconds)
    providers = ProviderRegistry(
        store,
        client,
        redirect_uri=settings.oauth_callback_url,
        scopes=settings.scope_list,
        app_name=settings.app_name,
        website=settings.app_website,
        timeout=settings.upstream_timeout_seconds,
        clock=clock,
    )
    tokens = TokenService(
        store,
        providers,
        timeout=settings.upstream_timeout_seconds,
        user_agent=settings.user_agent,
        transport=transport,
        clock=clock,
    )
    registry = IdentityRegistry(store, runner, clock=clock)
    identities = IdentityService(store, base_url=settings.base_url, clock=clock)
    device_flow = DeviceFlowCoordinator(
        store,
        tokens,
        verification_uri=settings.verification_uri,
        ttl_seconds=settings.device_code_ttl_seconds,
        interval_seconds=settings.poll_interval_seconds,
        clock=clock,
    )
    sessions = SessionManager(
        store,
        cache,
        runner,
        ttl_seconds=settings.session_ttl_seconds,
        anonymous_ttl_seconds=settings.anonymous_session_ttl_seconds,
        clock=clock,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.cache = cache
    app.state.http_client = client
    app.state.runner = runner
    app.state.providers = providers
    app.state.tokens = tokens
    app.state.registry = registry
    app.state.identities = identities
    app.state.device_flow = device_flow
    app.state.sessions = sessions
    app.state.gateway = ConnectionGateway(registry, identities, sessions, device_flow)


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Delete expired device codes and sessions every `interval` seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A database error only
    skips one round.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await app.state.device_flow.sweep()
            await app.state.sessions.sweep()
        except SQLAlchemyError:
            logger.exception("Sweep failed; retrying in %ds", interval)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order: durable store, cache, outbound HTTP client, services,
    then the sweep task (which needs the services).
    """
    settings = get_settings()
    logger.info("terminalpub starting up (base_url=%s)", settings.base_url)
    store = AuthStore(settings.database_url)
    cache = SessionCache(new_redis(settings.redis_url))
    client = new_client(settings.upstream_timeout_seconds, settings.user_agent)
    attach_services(app, settings, store, cache, client)
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.sweep_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    await app.state.runner.drain()
    await client.aclose()
    await cache.close()
    store.close()
    logger.info("terminalpub shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="terminalpub",
    description="Identity core for terminalpub: SSH key identities, device login, sessions.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=[_settings.domain, f"*.{_settings.domain}", "localhost", "127.0.0.1", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.base_url.rstrip("/")],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One access line per request. Health probes are logged at DEBUG."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    level = logging.DEBUG if request.url.path == "/api/v1/health" else logging.INFO
    logger.log(
        level,
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.client.host if request.client else "unknown",
    )
    return response


app.include_router(federation_router, tags=["Federation"])

# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.

# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler answers with the ErrorResponse envelope; only the status and
# the code differ.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(TerminalpubError)
async def terminalpub_error_handler(request: Request, exc: TerminalpubError) -> JSONResponse:
    """Map a typed outcome to its HTTP status and the error envelope."""
    if exc.http_status >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error_response(exc.http_status, exc.code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 for POST /device floods. The limit string goes into detail."""
    logger.info("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "unknown")
    response = _error_response(429, "rate_limited", "Too many attempts, slow down.", detail=str(exc.detail))
    response.headers["Retry-After"] = "60"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort. The exception is logged, never echoed to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness plus database and cache reachability."""
    components = {"app": "ok"}
    try:
        components["database"] = "ok" if request.app.state.store.ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    components["cache"] = "ok" if await request.app.state.cache.ping() else "error"

    if components["database"] != "ok":
        status = "unhealthy"
    elif components["cache"] != "ok":
        status = "degraded"
    else:
        status = "healthy"
    return HealthResponse(status=status, version=VERSION, components=components)
