from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from chatgateway.api.error_handling import register_exception_handlers
from chatgateway.api.routes import router
from chatgateway.config import Settings
from chatgateway.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_DEV_ORIGINS = [
    f"http://{host}:{port}"
    for host in ("localhost", "127.0.0.1")
    for port in (3000, 5173)
]

_BASELINE_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "API-Version": __version__,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    from chatgateway.service.runtime import get_runtime

    try:
        get_runtime()
    except Exception as exc:
        logger.error("gateway_startup_failed", error=str(exc))
        raise
    logger.info("gateway_started", version=__version__, build=__build__)
    yield
    try:
        await get_runtime().close()
    except Exception as exc:
        logger.error("gateway_shutdown_failed", error=str(exc))
    else:
        logger.info("gateway_stopped")


app = FastAPI(title="Chat Gateway", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return list(_settings.cors_allow_origins) or list(_DEV_ORIGINS)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
    max_age=3600,
)


def _is_uncacheable(path: str) -> bool:
    return path == "/healthz" or path.startswith("/v1/")


@app.middleware("http")
async def stamp_response_headers(request: Request, call_next):
    """Bind X-Request-ID for the request and add baseline response headers."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in _BASELINE_HEADERS.items():
        response.headers.setdefault(name, value)
    if _is_uncacheable(request.url.path):
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _health_check(component: str, check: Callable[[], Any]) -> bool:
    """Run a blocking check off the event loop; any failure or timeout is False."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return False
    return True


def _filesystem_check(root: Path) -> Callable[[], None]:
    def check() -> None:
        if not root.is_dir():
            raise FileNotFoundError(root)
        marker = root / ".health_check"
        marker.write_text(_utcnow_iso())
        marker.read_text()
        marker.unlink(missing_ok=True)

    return check


def _status(ok: bool) -> str:
    return "healthy" if ok else "unhealthy"


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from chatgateway.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    results: List[bool] = []

    verify_store = getattr(runtime.store, "verify_connection", None)
    if verify_store is None:
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        ok = await _health_check("database", verify_store)
        results.append(ok)
        checks["database"] = {"status": _status(ok)}

    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        ok = await _health_check("redis", runtime.cache.verify_connection)
        results.append(ok)
        checks["redis"] = {"status": _status(ok)}

    ok = await _health_check(
        "filesystem", _filesystem_check(Path(runtime.settings.shared_fs_root))
    )
    results.append(ok)
    checks["filesystem"] = {"status": _status(ok)}

    return {
        "status": _status(all(results)),
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": _utcnow_iso(),
    }


def create_app() -> FastAPI:
    return app
