from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from consoleauth.api.error_handling import register_exception_handlers
from consoleauth.api.routes import router
from consoleauth.config import Settings
from consoleauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from consoleauth.service.runtime import get_runtime

    # Fail fast on startup rather than on the first login
    runtime = get_runtime()
    logger.info("app_started", version=__version__, redis_enabled=runtime.cache is not None)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Admin Console Auth", version=__version__, lifespan=lifespan)


_LOCAL_CONSOLE_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


def _allowed_origins() -> List[str]:
    # No wildcard while credentials are allowed
    return _settings.cors_allow_origins or list(_LOCAL_CONSOLE_ORIGINS)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "session_id",
        "X-Rotation-Ticket",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one correlation ID.

    The ID comes from ``X-Request-ID`` when the client sends one, otherwise
    a new UUID is generated. It is echoed back in the same header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


async def _probe(component: str, check: Callable[[], None]) -> bool:
    """Run a blocking health probe off the event loop with a deadline."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return False
    return True


def _status(ok: bool) -> str:
    return "healthy" if ok else "unhealthy"


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from consoleauth.service.runtime import get_runtime

    runtime = get_runtime()
    fs_root = Path(runtime.store.fs_root)

    def _touch_fs_root() -> None:
        marker = fs_root / ".health_check"
        marker.write_text(datetime.now(timezone.utc).isoformat())
        marker.unlink(missing_ok=True)

    store_ok = await _probe("store", runtime.store.verify_connection)
    fs_ok = await _probe("filesystem", _touch_fs_root)
    checks: Dict[str, Dict[str, Any]] = {
        "store": {"status": _status(store_ok), "type": "memory"},
        "filesystem": {"status": _status(fs_ok)},
    }
    # Without Redis the in-process fallbacks are in use
    redis_ok = True
    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        redis_ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": _status(redis_ok), "degraded": not redis_ok}

    return {
        "status": _status(store_ok and fs_ok and redis_ok),
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
