"""
Main FastAPI application for the booking API.

Wires the orchestrator to its collaborators at startup:
- Directory service client (availability)
- Payments service client
- Kafka event publisher
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import httpx
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from booking_pipeline import __version__
from booking_pipeline.config import get_settings
from booking_pipeline.core.booking_orchestrator import BookingOrchestrator
from booking_pipeline.integrations.booking_management_client import BookingManagementClient
from booking_pipeline.integrations.payment_client import PaymentClient
from booking_pipeline.monitoring.health import HealthCheck
from booking_pipeline.monitoring.logging import setup_logging
from booking_pipeline.streaming.producer import EventPublisher, PublisherConfig

from .routes import booking_router, monitoring_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the collaborators unless they were put on app.state beforehand.
    """
    settings = get_settings()
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        kafka_brokers=settings.kafka_brokers,
    )

    http_client = None
    publisher = None
    if not hasattr(app.state, "orchestrator"):
        http_client = httpx.AsyncClient(timeout=settings.collaborator_timeout_seconds)
        publisher = EventPublisher(PublisherConfig.from_settings(settings))
        validation_client = BookingManagementClient(
            settings.booking_management_service_url,
            http_client,
            timeout=settings.collaborator_timeout_seconds,
        )
        payment_client = PaymentClient(
            settings.payment_service_url,
            http_client,
            timeout=settings.collaborator_timeout_seconds,
        )
        app.state.orchestrator = BookingOrchestrator(
            validation_client, payment_client, publisher, settings
        )
        app.state.health_check = HealthCheck(publisher, [validation_client, payment_client])

    yield

    # Shutdown
    logger.info("application_shutdown")
    if http_client is not None:
        await http_client.aclose()
    if publisher is not None:
        await asyncio.to_thread(publisher.close)


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    setup_logging(service="booking-api")

    app = FastAPI(
        title="Booking API",
        description=(
            "Validates room bookings, charges payment and queues the booking "
            "for asynchronous fulfillment."
        ),
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed bodies are a plain 400, like any other client input error."""
        logger.warning("invalid_request_body", errors=exc.errors())
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": "Invalid request body"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Internal server error"},
        )

    app.include_router(booking_router)
    app.include_router(monitoring_router)
    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "booking_pipeline.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
