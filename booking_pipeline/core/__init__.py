"""Core booking logic: orchestration and fulfillment."""
from .booking_orchestrator import (
    BookingError,
    BookingOrchestrator,
    EventPublishError,
    InvalidBookingRequestError,
    PaymentDeclinedError,
    PaymentUnavailableError,
    ValidationRejectedError,
    ValidationUnavailableError,
    generate_booking_id,
)
from .fulfillment_writer import (
    BookingNotFoundError,
    FulfillmentError,
    FulfillmentWriter,
    RoomNotFoundError,
    UserNotFoundError,
)
from .sinks import BookingSink, CancellationSink

__all__ = [
    "BookingError",
    "BookingNotFoundError",
    "BookingOrchestrator",
    "BookingSink",
    "CancellationSink",
    "EventPublishError",
    "FulfillmentError",
    "FulfillmentWriter",
    "InvalidBookingRequestError",
    "PaymentDeclinedError",
    "PaymentUnavailableError",
    "RoomNotFoundError",
    "UserNotFoundError",
    "ValidationRejectedError",
    "ValidationUnavailableError",
    "generate_booking_id",
]
