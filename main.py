import asyncio
import logging
from contextlib import asynccontextmanager

from dishka import AsyncContainer
from fastapi import FastAPI, HTTPException
from starlette.exceptions import HTTPException as StarletteHTTPException
from dishka.integrations.fastapi import setup_dishka

from core.container import container
from core.exception_handler import (
    http_exception_handler,
    starlette_exception_handler,
    custom_exception_handler
)
from core.exceptions import BaseCustomException
from indexer.broadcast import BroadcastServer
from indexer.notifications import NotificationBus, log_notifications
from indexer.orchestrator import SyncOrchestrator
from indexer.router import router as status_router, ws_router

VERSION = "1.0.0"


def _log_task_failure(logger: logging.Logger):
    def callback(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task {task.get_name()} failed: {task.exception()}")
    return callback


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Initialize the indexer, run it in the background and stop it on shutdown.

    Initialization errors (ledger or store unreachable) propagate and abort
    the application startup.
    """
    container: AsyncContainer = app.state.dishka_container
    logger = await container.get(logging.Logger, component="logger")
    orchestrator = await container.get(SyncOrchestrator, component="indexer")
    broadcast_server = await container.get(BroadcastServer, component="indexer")
    bus = await container.get(NotificationBus, component="indexer")

    app.state.broadcast_server = broadcast_server

    await orchestrator.initialize()

    tasks = [
        asyncio.create_task(broadcast_server.run(), name="broadcast"),
        asyncio.create_task(log_notifications(bus, logger), name="notification-log"),
        asyncio.create_task(orchestrator.start(), name="indexer"),
    ]
    for task in tasks:
        task.add_done_callback(_log_task_failure(logger))

    try:
        yield
    finally:
        logger.info("Shutting down server...")
        await orchestrator.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await container.close()


def create_app(container: AsyncContainer) -> FastAPI:
    """
    Build the FastAPI application around a dishka container.

    Parameters
    ----------
    container : AsyncContainer
        Container providing the indexer services

    Returns
    -------
    FastAPI
        Application exposing the status API and the ``/ws`` stream
    """
    app = FastAPI(
        title="EVM Event Indexer",
        version=VERSION,
        description="Indexes contract events and streams them to WebSocket clients",
        lifespan=lifespan,
    )

    setup_dishka(container, app)

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_exception_handler)
    app.add_exception_handler(BaseCustomException, custom_exception_handler)
    app.add_exception_handler(Exception, custom_exception_handler)

    app.include_router(status_router)
    app.include_router(ws_router)

    @app.get("/")
    async def root():
        """
        Root endpoint.

        Returns
        -------
        dict
            Application information
        """
        return {
            "name": "EVM Event Indexer",
            "version": VERSION,
            "endpoints": {
                "health": "/api/status/health",
                "sync": "/api/status/sync",
                "clients": "/api/status/clients",
                "websocket": "/ws",
                "docs": "/docs"
            }
        }

    @app.get("/health")
    async def health():
        """
        Liveness check endpoint.

        Returns
        -------
        dict
            Health status
        """
        return {"status": "healthy", "version": VERSION}

    return app


app = create_app(container)
