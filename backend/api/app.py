"""
FastAPI application factory for the SweatProof API service.

Creates the app with:
- Attestation, messaging-bot and cache routes
- Middleware stack
- Health check endpoint
- Lifespan management (startup/shutdown)
- Background challenge-window finalization
- In-process queue worker (when run_worker_in_api is set)
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from shared.config import QueueBackend, get_settings
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from api.dependencies import ServiceContainer, build_container
from api.middleware import setup_middleware
from api.routes.attestations import router as attestations_router
from api.routes.resolve import router as resolve_router
from api.routes.xmtp import router as xmtp_router
from notifications.transport import HttpBotTransport
from notifications.worker import QueueWorker
from verifier.resolution import run_finalize_loop

logger = get_logger(__name__)


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing without Redis or background tasks."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Connects Redis (redis backend only), starts the finalize loop and the
    queue worker, and tears them down in reverse on shutdown.
    """
    container: ServiceContainer = app.state.container
    setup_logging("api", container.settings)
    settings = container.settings
    logger.info("api_starting", environment=settings.environment.value, queue_backend=settings.queue_backend.value)

    if container.redis is not None:
        await container.redis.connect()
    if isinstance(container.transport, HttpBotTransport):
        await container.transport.start()

    tasks: list[asyncio.Task] = [
        asyncio.create_task(
            run_finalize_loop(container.resolution, container.verifier_settings.finalize_interval_s),
            name="finalize_loop",
        )
    ]
    stop = asyncio.Event()
    if settings.run_worker_in_api:
        worker = QueueWorker(container.queue, container.transport)
        tasks.append(asyncio.create_task(worker.run(stop), name="queue_worker"))
    elif settings.queue_backend == QueueBackend.MEMORY:
        logger.warning("memory_queue_without_worker", hint="notifications will never be delivered")

    start_metrics_server(settings.metrics_port)

    logger.info("api_started")
    try:
        yield
    finally:
        logger.info("api_shutting_down")
        stop.set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if isinstance(container.transport, HttpBotTransport):
            await container.transport.close()
        if container.redis is not None:
            await container.redis.disconnect()
        logger.info("api_stopped")


def create_app(container: Optional[ServiceContainer] = None, *, use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application. Set use_lifespan=False for testing without background tasks."""
    settings = container.settings if container is not None else get_settings()

    app = FastAPI(
        title="SweatProof API",
        description="Evidence aggregation and resolution for fitness predictions",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.container = container if container is not None else build_container(settings)

    setup_middleware(app, settings)

    app.include_router(attestations_router)
    app.include_router(xmtp_router)
    app.include_router(resolve_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
