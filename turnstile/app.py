from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, Request

from turnstile.api.error_handling import register_exception_handlers
from turnstile.api.routes import get_runtime, router
from turnstile.logging import get_logger, set_correlation_id
from turnstile.service.runtime import Runtime
from turnstile.storage.errors import StorageError

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_periodic(
    name: str, interval_seconds: int, job: Callable[[], Awaitable[Any]]
) -> None:
    """Run ``job`` every ``interval_seconds`` until cancelled."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await job()
            except StorageError as exc:
                logger.warning("sweep_failed", sweep=name, error=exc.message)
    except asyncio.CancelledError:
        logger.info("sweep_task_cancelled", sweep=name)
        raise


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP app around ``runtime``.

    Without a runtime one is constructed from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = Runtime()
        rt: Runtime = app.state.runtime

        async def purge_records() -> None:
            await rt.records.purge_expired(rt.clock())

        async def sweep_rate_windows() -> None:
            rt.rate_limiter.sweep()

        tasks = [
            asyncio.create_task(
                _run_periodic("rate_limit", rt.settings.rate_limit_sweep_seconds, sweep_rate_windows)
            ),
            asyncio.create_task(
                _run_periodic("expired_records", rt.settings.token_cleanup_seconds, purge_records)
            ),
        ]
        logger.info("sweeps_started", count=len(tasks))

        yield

        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await rt.close()
        logger.info("runtime_cleanup_complete")

    app = FastAPI(title="Turnstile", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Token responses must never be cached
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("API-Version", __version__)
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        rt = get_runtime(request)
        try:
            records_ok = await asyncio.wait_for(rt.records.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="records")
            records_ok = False
        return {
            "status": "healthy" if records_ok else "degraded",
            "version": __version__,
            "checks": {
                "records": {"ok": records_ok, "backend": type(rt.records).__name__},
                "rate_limiter": {"ok": True, "tracked_keys": len(rt.rate_limiter)},
            },
        }

    return app


app = create_app()
