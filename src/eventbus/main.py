"""
Module: main.py
Description: FastAPI application entry point for the event bus.

Initializes the FastAPI application with all routes and error handlers,
and owns the event bus lifecycle: the lifespan builds the delivery store
and the webhook notifier from settings, starts the bus (crash recovery,
first delivery cycle, polling) and stops it on shutdown.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eventbus.bus import EventBus
from eventbus.config.settings import Settings, settings
from eventbus.delivery.push import WebhookNotifier, endpoint_resolver
from eventbus.handlers.events import router as events_router
from eventbus.handlers.subscriptions import router as subscriptions_router
from eventbus.storage.base import DeliveryStore
from eventbus.storage.dynamodb import DynamoDBDeliveryStore
from eventbus.storage.memory import InMemoryDeliveryStore
from eventbus.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


def build_store(config: Settings) -> DeliveryStore:
    """Create the delivery store selected by storage_backend."""
    if config.storage_backend == "dynamodb":
        return DynamoDBDeliveryStore(
            events_table_name=config.events_table_name,
            subscriptions_table_name=config.subscriptions_table_name,
            deliveries_table_name=config.deliveries_table_name,
            region_name=config.aws_region,
            endpoint_url=config.dynamodb_endpoint_url,
        )
    return InMemoryDeliveryStore()


def build_event_bus(config: Settings) -> EventBus:
    """Wire store, webhook notifier and worker configuration into an EventBus."""
    notifier = WebhookNotifier(
        endpoint_resolver(config.webhook_endpoints, config.webhook_url_template),
        timeout_seconds=config.notify_timeout_seconds,
    )
    return EventBus(build_store(config), notifier, config.delivery_config())


def create_app(bus: Optional[EventBus] = None, config: Optional[Settings] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        bus: Event bus to serve; built from settings at startup when omitted
        config: Settings to build the bus from (module settings by default)

    Returns:
        Configured FastAPI application
    """
    config = config or settings
    configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        event_bus = bus or build_event_bus(config)
        app.state.event_bus = event_bus

        logger.info(
            "Starting event bus API",
            version=config.app_version,
            storage_backend=config.storage_backend,
            region=config.aws_region
        )
        await event_bus.start()
        try:
            yield
        finally:
            await event_bus.stop()
            logger.info("Event bus API shut down")

    app = FastAPI(
        title=config.app_name,
        description="At-least-once event delivery with retries and cron schedules",
        version=config.app_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(events_router)
    app.include_router(subscriptions_router)

    @app.get("/health")
    async def health_check():
        """Basic application health information."""
        event_bus = getattr(app.state, "event_bus", None)
        return {
            "status": "ok",
            "version": config.app_version,
            "worker_running": bool(event_bus and event_bus.worker.is_running()),
        }

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Log HTTP exceptions and return structured error responses."""
        logger.warning(
            "HTTP exception occurred",
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path,
            method=request.method
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error": {
                    "code": exc.status_code,
                    "message": exc.detail,
                    "type": "http_exception"
                }
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Log unexpected exceptions and return a generic error response."""
        logger.error(
            "Unhandled exception occurred",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            method=request.method
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": 500,
                    "message": "Internal server error",
                    "type": "internal_error"
                }
            }
        )

    return app
