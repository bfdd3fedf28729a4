from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from psycopg import Error as PsycopgError

from clientportal.api.error_handling import register_exception_handlers
from clientportal.api.routes import router
from clientportal.logging import get_logger, set_correlation_id
from clientportal.storage.postgres import PostgresStore

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from clientportal.service.runtime import get_runtime

    runtime = get_runtime()
    yield
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Client Portal Auth Core", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    The id is taken from X-Request-ID when the client sends one, otherwise
    a new UUID is generated; either way it is echoed back in X-Request-ID.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
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
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness plus database and counter store reachability."""
    from clientportal.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    if isinstance(runtime.store, PostgresStore):
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            db_ok = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            db_ok = False
        except PsycopgError as exc:
            logger.error("health_check_database_failed", error=str(exc))
            db_ok = False
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    # BoundedCounterStore.ping already applies the store deadline
    counters_ok = await runtime.counters.ping()
    checks["counter_store"] = {
        "status": "healthy" if counters_ok else "unhealthy",
        "degraded": not counters_ok,
        "type": type(runtime.counter_backend).__name__,
    }

    # Counter store outages degrade limiting and caching but do not take the
    # process down, so only the database decides overall health.
    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
