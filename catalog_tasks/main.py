import asyncio
import contextlib
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from catalog_tasks.config import Settings, settings as default_settings
from catalog_tasks.api.v1 import catalog, health, tasks, websocket
from catalog_tasks.middleware.logging import LoggingMiddleware
from catalog_tasks.middleware.monitoring import MonitoringMiddleware
from catalog_tasks.middleware.request_id import RequestIDLogFilter, RequestIDMiddleware
from catalog_tasks.monitoring import metrics
from catalog_tasks.services.broadcaster import PushBroadcaster
from catalog_tasks.services.catalog_service import CatalogService
from catalog_tasks.services.task_store import TaskRecordStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    """Configure root logging once for the server process"""
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDLogFilter())
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
    ))
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else settings.LOG_LEVEL.upper(),
        handlers=[handler],
        force=True,
    )


def create_app(
        settings: Optional[Settings] = None,
        task_store: Optional[TaskRecordStore] = None,
        broadcaster: Optional[PushBroadcaster] = None,
        catalog_service: Optional[CatalogService] = None,
) -> FastAPI:
    """Build the API with explicitly constructed store, broadcaster and catalog"""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.task_store.initialize()

        heartbeat = None
        if settings.WS_HEARTBEAT_SECONDS > 0:
            heartbeat = asyncio.create_task(app.state.broadcaster.run_heartbeat(settings.WS_HEARTBEAT_SECONDS))
        logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started")

        try:
            yield
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
            await app.state.broadcaster.close_all()
            await app.state.task_store.close()
            logger.info(f"{settings.APP_NAME} stopped")

    app = FastAPI(
        title=settings.APP_NAME,
        description="""
    Task execution and status synchronization for the product catalog.

    ## Features
		* **Task log** with bounded retention
		* **Real-time task status** via WebSocket push
		* **Catalog mutations** reporting their outcome to every client
    """,
        version=settings.APP_VERSION,
        openapi_tags=[
            {"name": "tasks", "description": "Task record log"},
            {"name": "catalog", "description": "Catalog mutations run on behalf of tasks"},
            {"name": "websocket", "description": "Real-time task status push"},
            {"name": "monitoring", "description": "System monitoring"},
        ],
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.task_store = task_store or TaskRecordStore(settings.TASKS_FILE, settings.TASK_RETENTION_LIMIT)
    app.state.broadcaster = broadcaster or PushBroadcaster()
    app.state.catalog = catalog_service or CatalogService()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )
    app.add_middleware(MonitoringMiddleware)
    app.add_middleware(LoggingMiddleware)
    # Added last so it runs first and the id is set for the other middleware
    app.add_middleware(RequestIDMiddleware)

    app.include_router(tasks.router, prefix=f"{settings.API_V1_PREFIX}/tasks", tags=["tasks"])
    app.include_router(catalog.router, prefix=settings.API_V1_PREFIX, tags=["catalog"])
    app.include_router(health.router, prefix=settings.API_V1_PREFIX, tags=["monitoring"])
    app.include_router(websocket.router, prefix=settings.API_V1_PREFIX, tags=["websocket"])

    # Monitoring endpoints (internal use)
    if settings.EXPOSE_METRICS:
        app.include_router(metrics.router, prefix="/internal", tags=["monitoring"])

    @app.get("/health")
    async def liveness():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.APP_VERSION,
        }

    return app


configure_logging(default_settings)
app = create_app()
