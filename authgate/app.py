from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from authgate.api.error_handling import register_exception_handlers
from authgate.api.routes import router
from authgate.api.rpc import router as rpc_router
from authgate.config import Settings
from authgate.logging import get_logger, set_correlation_id
from authgate.metrics import metrics as registry

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release pools on shutdown."""
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__, build=__build__)
    try:
        yield
    finally:
        await runtime.close()
        logger.info("app_stopped")


app = FastAPI(title="authgate", version=__version__, lifespan=lifespan)


# never a wildcard while credentials are allowed
_LOCAL_ORIGINS = ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]


def _allowed_origins() -> List[str]:
    return list(_settings.cors_allow_origins or _LOCAL_ORIGINS)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}
_NO_STORE = "no-store, private"


@app.middleware("http")
async def record_request_metrics(request, call_next):
    started = time.perf_counter()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        # label by route template so path parameters do not explode cardinality
        path = getattr(request.scope.get("route"), "path", "unmatched")
        registry.observe(
            "request_duration_seconds",
            time.perf_counter() - started,
            {"method": request.method, "path": path, "status": str(status)},
        )
        if status >= 500:
            registry.inc("errors_total", {"path": path})


@app.middleware("http")
async def apply_response_headers(request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    # tokens and profiles travel in these bodies; nothing here is cacheable
    response.headers.setdefault("Cache-Control", _NO_STORE)
    return response


@app.middleware("http")
async def bind_request_id(request, call_next):
    """Reuse the caller's X-Request-ID (or mint one) for logs and the envelope."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(rpc_router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


async def _check_component(component: str, check) -> str:
    """Run a blocking connectivity check off the loop; report healthy/unhealthy."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return "unhealthy"
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return "unhealthy"
    return "healthy"


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability plus the running build."""
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    verify_store = getattr(runtime.store, "verify_connection", None)
    checks: Dict[str, Dict[str, Any]] = {
        "database": (
            {"status": await _check_component("database", verify_store)}
            if verify_store is not None
            else {"status": "healthy", "type": "memory"}
        ),
        "redis": (
            {"status": await _check_component("redis", runtime.cache.verify_connection)}
            if runtime.cache is not None
            else {"status": "not_configured"}
        ),
    }
    degraded = any(check["status"] == "unhealthy" for check in checks.values())
    return {
        "status": "unhealthy" if degraded else "healthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _gauge(name: str, help_text: str, sample: str) -> List[str]:
    return [f"# HELP {name} {help_text}", f"# TYPE {name} gauge", sample]


@app.get("/metrics", response_class=Response)
async def metrics() -> Response:
    """Prometheus text exposition of the process registry."""
    from authgate.service.runtime import get_runtime

    lines = _gauge(
        "authgate_info",
        "Application version info",
        f'authgate_info{{version="{__version__}",build="{__build__}"}} 1',
    )
    cache_up = 1 if get_runtime().cache is not None else 0
    lines += _gauge(
        "authgate_cache_available",
        "Whether the Redis rate counter is in use",
        f"authgate_cache_available {cache_up}",
    )
    lines.extend(registry.render())
    return Response(content="\n".join(lines) + "\n", media_type="text/plain")


def create_app() -> FastAPI:
    return app
