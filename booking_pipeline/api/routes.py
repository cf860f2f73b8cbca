"""
API routes for booking and cancellation.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from booking_pipeline.core.booking_orchestrator import BookingError, BookingOrchestrator
from booking_pipeline.monitoring.health import HealthCheck

from .schemas import (
    BookingRequest,
    BookingResponse,
    CancellationRequest,
    CancellationResponse,
    HealthCheckResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
booking_router = APIRouter(tags=["bookings"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_orchestrator(request: Request) -> BookingOrchestrator:
    """Orchestrator built at startup."""
    return request.app.state.orchestrator


def get_health_check(request: Request) -> HealthCheck:
    """Health checker built at startup."""
    return request.app.state.health_check


def _error_response(response_cls: Any, error: BookingError) -> JSONResponse:
    body = response_cls(success=False, message=error.message)
    if error.reasons is not None and "reasons" in response_cls.model_fields:
        body.reasons = error.reasons
    return JSONResponse(
        status_code=error.status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


@booking_router.post(
    "/book",
    response_model=BookingResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    summary="Book a room",
    description="Validate availability, charge the card and queue the booking for fulfillment",
)
async def book(
    request: BookingRequest,
    baggage: str = Header(default=""),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> Any:
    """
    Create a booking.

    201 means the booking was charged and queued; it is written to the store
    asynchronously.
    """
    try:
        booking_id = await orchestrator.book(
            payment_id=request.payment_id,
            card_number=request.credit_card_number,
            room_id=request.room_id,
            user_id=request.user_id,
            guests=request.guests,
            start_date=request.start_date,
            end_date=request.end_date,
            baggage=baggage,
        )
    except BookingError as e:
        return _error_response(BookingResponse, e)

    return BookingResponse(
        success=True,
        message="Booking completed successfully",
        booking_id=booking_id,
    )


@booking_router.post(
    "/cancel",
    response_model=CancellationResponse,
    status_code=status.HTTP_200_OK,
    summary="Cancel a booking",
    description="Queue a cancellation for fulfillment",
)
async def cancel(
    request: CancellationRequest,
    baggage: str = Header(default=""),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> Any:
    """Cancel a booking."""
    try:
        await orchestrator.cancel(request.booking_id, request.user_id, baggage=baggage)
    except BookingError as e:
        return _error_response(CancellationResponse, e)

    return CancellationResponse(
        success=True,
        message="Booking cancellation completed successfully",
    )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
