"""FastAPI application factory.

    uvicorn dealhook.serve:create_app --factory
    python -m dealhook.serve

The lifespan owns the service graph: receipt store, queue and dispatchers
are built on startup and closed on shutdown. With
``DEALHOOK_EMBEDDED_WORKERS=true`` the worker pool runs in-process too,
which is convenient for development; production runs
``python -m dealhook.worker`` separately.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool

from dealhook import __version__
from dealhook.config import Settings
from dealhook.errors import DealhookError
from dealhook.logging_config import setup_logging
from dealhook.services import Services, build_services
from dealhook.webhooks.gateway import WebhookGateway
from dealhook.webhooks.handlers import register_webhook_routes

logger = logging.getLogger(__name__)


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Handle rate limit exceeded errors."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        {"message": "Too many requests, please try again later.", "retry_after": retry_after},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def _dealhook_error_handler(request: Request, exc: DealhookError):
    return JSONResponse({"message": exc.message}, status_code=exc.status_code)


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build the app. Pass ``services`` to skip backend construction (tests)."""
    settings = settings or (services.settings if services is not None else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services if services is not None else await run_in_threadpool(build_services, settings)
        app.state.services = svc
        app.state.gateway = WebhookGateway(svc.registry, svc.receipts, settings.api_key)
        pool = None
        if settings.embedded_workers:
            pool = svc.worker_pool()
            pool.start()
        logger.info("dealhook %s started (sources: %s)", __version__, ", ".join(svc.registry.sources))
        try:
            yield
        finally:
            if pool is not None:
                await run_in_threadpool(pool.stop)
            if services is None:
                svc.close()
            logger.info("dealhook stopped")

    app = FastAPI(title="dealhook", version=__version__, lifespan=lifespan)

    app.state.limiter = Limiter(key_func=get_remote_address, enabled=bool(settings.rate_limit))
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DealhookError, _dealhook_error_handler)

    register_webhook_routes(app, rate_limit=settings.rate_limit)

    @app.get("/health")
    async def health(request: Request):
        """Liveness of the receipt store and the dispatch queue."""
        svc: Services = request.app.state.services
        checks = {
            "receipts": await run_in_threadpool(svc.receipts.ping),
            "queue": await run_in_threadpool(svc.queue.ping),
        }
        healthy = all(checks.values())
        return JSONResponse(
            {"status": "ok" if healthy else "degraded", "checks": checks, "version": __version__},
            status_code=200 if healthy else 503,
        )

    return app


def main() -> None:
    import uvicorn

    settings = Settings()
    setup_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
