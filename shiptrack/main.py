"""
Shipment Tracker service
Workflow state machine plus a real-time channel for shipment watchers
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shared.core import RequestLoggingMiddleware, ServiceHealth, get_logger, setup_logging
from shiptrack.api.routes import router as realtime_router
from shiptrack.application.service import ShipmentWorkflowService
from shiptrack.application.workflow import WorkflowEngine
from shiptrack.core_settings import Settings, get_settings
from shiptrack.exceptions import register_exception_handlers
from shiptrack.infrastructure.db import build_engine, init_models, make_session_factory
from shiptrack.infrastructure.repository import (
    InMemoryShipmentRepository,
    ShipmentRepository,
    SqlShipmentRepository,
)
from shiptrack.realtime.events import ShipmentEventEmitter
from shiptrack.realtime.manager import ChannelManager
from shiptrack.realtime.presence import PresenceRegistry

SERVICE_DESCRIPTION = "Shipment workflow and real-time tracking service"

logger = get_logger(__name__)


def _build_repository(app: FastAPI, settings: Settings) -> ShipmentRepository:
    if settings.REPOSITORY_BACKEND == "memory":
        logger.info("Using in-memory shipment repository")
        return InMemoryShipmentRepository()

    engine = build_engine(settings.database_url)
    try:
        init_models(engine)
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        engine.dispose()
        raise
    app.state.engine = engine
    return SqlShipmentRepository(make_session_factory(engine))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    settings: Settings = app.state.settings
    logger.info(f"Starting {settings.SERVICE_NAME} version {settings.SERVICE_VERSION}")

    repository = app.state.repository or _build_repository(app, settings)
    manager: ChannelManager = app.state.channel_manager
    app.state.workflow_service = ShipmentWorkflowService(
        repository,
        engine=WorkflowEngine(),
        events=ShipmentEventEmitter(manager),
    )
    logger.info(f"{settings.SERVICE_NAME} started successfully")

    yield

    logger.info(f"Shutting down {settings.SERVICE_NAME}")
    await manager.shutdown()
    engine = app.state.engine
    if engine is not None:
        engine.dispose()


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[ShipmentRepository] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(
        service_name=settings.SERVICE_NAME,
        level=settings.LOG_LEVEL,
        version=settings.SERVICE_VERSION,
        environment=settings.ENVIRONMENT,
    )

    app = FastAPI(
        title=settings.SERVICE_NAME,
        description=SERVICE_DESCRIPTION,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    # One registry per process, handed to the manager explicitly
    presence = PresenceRegistry()
    manager = ChannelManager.from_settings(settings, presence=presence)

    app.state.settings = settings
    app.state.repository = repository
    app.state.engine = None
    app.state.presence = presence
    app.state.channel_manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    register_exception_handlers(app)

    health_service = ServiceHealth(
        settings.SERVICE_NAME,
        settings.SERVICE_VERSION,
        engine_provider=lambda: app.state.engine,
        realtime_stats=manager.stats,
    )
    app.include_router(health_service.create_health_router())
    app.include_router(realtime_router)

    @app.get("/")
    async def root():
        return {
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "status": "running",
            "docs": "/api/docs"
        }

    @app.get("/info")
    async def info():
        """Service information endpoint"""
        return {
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "description": SERVICE_DESCRIPTION,
            "environment": settings.ENVIRONMENT,
            "endpoints": {
                "health": "/health",
                "ready": "/health/ready",
                "live": "/health/live",
                "metrics": "/metrics",
                "realtime": "/ws/shipments",
                "docs": "/api/docs"
            }
        }

    return app


app = create_app()
