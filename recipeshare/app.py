from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from recipeshare.api.error_handling import _error_response, register_exception_handlers
from recipeshare.api.routes import clear_session_cookie, router
from recipeshare.config import Settings, get_settings
from recipeshare.logging import get_logger, security_event, set_correlation_id
from recipeshare.service.csrf import CSRF_HEADER
from recipeshare.service.errors import CsrfRejected
from recipeshare.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    try:
        get_runtime()
        logger.info("runtime_ready")
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))
        raise
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; no wildcard since cookies are sent with credentials
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="RecipeShare Auth", version=__version__, lifespan=lifespan)

    # Starlette runs the last registered middleware first, so the order below
    # is the reverse of execution: CORS, correlation id, security headers, API
    # rate limit, then the CSRF guard right before routing.

    @app.middleware("http")
    async def enforce_csrf_token(request: Request, call_next):
        """Reject state-changing requests whose token does not match the session.

        Runs before any route or auth logic. The token is checked against the
        stored session even if that session has since gone idle; expiry is
        enforced afterwards so the client learns its session timed out.
        """
        runtime = get_runtime()
        if runtime.csrf.requires_check(request.method) and request.url.path.startswith("/v1/"):
            session_id = request.cookies.get(runtime.settings.session_cookie_name)
            session = runtime.store.get_session(session_id) if session_id else None
            try:
                runtime.csrf.enforce(
                    session,
                    request.headers.get(CSRF_HEADER),
                    path=request.url.path,
                    method=request.method,
                    client_ip=_client_ip(request),
                )
            except CsrfRejected as exc:
                return _error_response(exc.status_code, exc.message, code=exc.error_code)
        response = await call_next(request)
        if getattr(request.state, "clear_session_cookie", False):
            clear_session_cookie(response)
        return response

    @app.middleware("http")
    async def enforce_api_rate_limit(request: Request, call_next):
        if not request.url.path.startswith("/v1/"):
            return await call_next(request)
        runtime = get_runtime()
        allowed, remaining, reset_seconds = await check_rate_limit(
            runtime,
            f"api:{_client_ip(request)}",
            runtime.settings.rate_limit_api,
            runtime.settings.rate_limit_api_window_seconds,
            return_remaining=True,
        )
        if not allowed:
            security_event(
                "rate_limited",
                logger=logger,
                scope="api",
                ip=_client_ip(request),
                path=request.url.path,
            )
            response = _error_response(
                429, "too many requests, please try again later", code="rate_limited"
            )
            response.headers["Retry-After"] = str(max(1, reset_seconds))
            return response
        response = await call_next(request)
        response.headers.setdefault("X-RateLimit-Limit", str(runtime.settings.rate_limit_api))
        response.headers.setdefault("X-RateLimit-Remaining", str(max(0, remaining)))
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        response.headers.setdefault(
            "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
        )
        if request.url.scheme == "https":
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        response.headers.setdefault(
            "Content-Security-Policy",
            "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
        )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with a correlation id for logs and the X-Request-ID header.

        A client-supplied X-Request-ID is reused; otherwise a new UUID is made.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    # Outermost, so CSRF and rate-limit rejections carry CORS headers too
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", CSRF_HEADER, "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Liveness plus a bounded probe of the store and Redis."""
        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}
        healthy = True

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component=label,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        if hasattr(runtime.store, "verify_connection"):
            db_ok = await _run_bounded("database", runtime.store.verify_connection)
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
            healthy = healthy and db_ok
        else:
            checks["database"] = {"status": "healthy", "type": "memory"}

        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
