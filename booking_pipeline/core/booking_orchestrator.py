"""
Booking orchestrator: validate, charge, publish.

The three steps run strictly in sequence and the first failure ends the
request. Every failure is raised as a BookingError subclass carrying the
HTTP status and the public message for the API layer.

Once the payment succeeded the card has been charged. If the BookingEvent
then cannot be published, the request fails with a server error and the
inconsistency is reported through a critical log line and the
``bookings_charged_not_published_total`` metric. It is never retried here.
"""
import asyncio
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any, List, Optional

import structlog

from booking_pipeline.integrations.base import ServiceUnavailableError
from booking_pipeline.integrations.booking_management_client import BookingManagementClient
from booking_pipeline.integrations.payment_client import PaymentClient
from booking_pipeline.monitoring.logging import mask_card_number
from booking_pipeline.monitoring.metrics import metrics
from booking_pipeline.streaming.events import (
    BOOKING_CANCELLATIONS_TOPIC,
    BOOKING_EVENTS_TOPIC,
    BookingEvent,
    CancellationEvent,
)
from booking_pipeline.streaming.producer import EventPublisher, PublishError

logger = structlog.get_logger(__name__)

_BOOKING_ID_ALPHABET = string.ascii_letters + string.digits


class BookingError(Exception):
    """Base exception for booking and cancellation failures."""

    status_code = 500
    outcome = "error"

    def __init__(self, message: str, reasons: Optional[List[str]] = None):
        """
        Initialize booking error.

        Args:
            message: Public message returned to the caller
            reasons: Validation reasons, when there are any
        """
        super().__init__(message)
        self.message = message
        self.reasons = reasons


class InvalidBookingRequestError(BookingError):
    """Malformed or incomplete request, rejected before any side effect."""

    status_code = 400
    outcome = "invalid_request"


class ValidationUnavailableError(BookingError):
    """The directory service could not be asked."""

    status_code = 500
    outcome = "validation_unavailable"


class ValidationRejectedError(BookingError):
    """The directory service said no."""

    status_code = 400
    outcome = "validation_rejected"


class PaymentUnavailableError(BookingError):
    """The payments service could not be asked."""

    status_code = 402
    outcome = "payment_unavailable"


class PaymentDeclinedError(BookingError):
    """The payments service refused the charge."""

    status_code = 402
    outcome = "payment_declined"


class EventPublishError(BookingError):
    """The event could not be durably queued."""

    status_code = 500
    outcome = "publish_failed"


def generate_booking_id(now: Optional[float] = None) -> str:
    """Return ``booking_<unix seconds>_<6 random alphanumerics>``."""
    seconds = int(now if now is not None else time.time())
    suffix = "".join(secrets.choice(_BOOKING_ID_ALPHABET) for _ in range(6))
    return f"booking_{seconds}_{suffix}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BookingOrchestrator:
    """
    Runs the booking and cancellation flows.

    Example:
        >>> orchestrator = BookingOrchestrator(validation_client, payment_client, publisher)
        >>> booking_id = await orchestrator.book(
        ...     payment_id="pay_1", card_number="4111111111111111", room_id="room-101",
        ...     user_id="alice@example.com", guests=2, start_date=start, end_date=end,
        ... )
    """

    def __init__(
        self,
        validation_client: BookingManagementClient,
        payment_client: PaymentClient,
        publisher: EventPublisher,
        settings: Optional[Any] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            validation_client: Directory service client
            payment_client: Payments service client
            publisher: Event publisher
            settings: Optional settings; topic names are taken from it when given
        """
        self.validation_client = validation_client
        self.payment_client = payment_client
        self.publisher = publisher
        self.booking_topic = (
            settings.booking_events_topic if settings is not None else BOOKING_EVENTS_TOPIC
        )
        self.cancellation_topic = (
            settings.booking_cancellations_topic
            if settings is not None
            else BOOKING_CANCELLATIONS_TOPIC
        )

    @staticmethod
    def _validate_booking_request(
        payment_id: str,
        card_number: str,
        room_id: str,
        user_id: str,
        guests: int,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> None:
        """
        Check the request shape before any side effect.

        Raises:
            InvalidBookingRequestError: If a field is missing or out of range
        """
        if not (payment_id and card_number and room_id and user_id):
            raise InvalidBookingRequestError("Missing required fields")
        if guests is None or guests <= 0:
            raise InvalidBookingRequestError("Invalid number of guests")
        if start_date is None or end_date is None:
            raise InvalidBookingRequestError("Invalid booking dates")

        start, end = _as_utc(start_date), _as_utc(end_date)
        if start >= end or start < datetime.now(timezone.utc):
            raise InvalidBookingRequestError("Invalid booking dates")

    async def book(
        self,
        payment_id: str,
        card_number: str,
        room_id: str,
        user_id: str,
        guests: int,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
        baggage: str = "",
    ) -> str:
        """
        Validate, charge and publish a booking.

        Returns:
            The new booking id

        Raises:
            BookingError: Subclass describing the first failed step
        """
        log = logger.bind(
            payment_id=payment_id,
            user_id=user_id,
            room_id=room_id,
            baggage=baggage or None,
        )
        log.info(
            "booking_request_received",
            guests=guests,
            card_number_mask=mask_card_number(card_number),
        )
        start_time = time.time()

        try:
            booking_id = await self._book(
                log, payment_id, card_number, room_id, user_id, guests,
                start_date, end_date, baggage,
            )
        except BookingError as e:
            metrics.record_booking_request(e.outcome, time.time() - start_time)
            raise

        metrics.record_booking_request("success", time.time() - start_time)
        log.info("booking_completed", booking_id=booking_id)
        return booking_id

    async def _book(
        self,
        log: Any,
        payment_id: str,
        card_number: str,
        room_id: str,
        user_id: str,
        guests: int,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
        baggage: str,
    ) -> str:
        try:
            self._validate_booking_request(
                payment_id, card_number, room_id, user_id, guests, start_date, end_date
            )
        except InvalidBookingRequestError as e:
            log.warning("booking_request_invalid", reason=e.message)
            raise

        start, end = _as_utc(start_date), _as_utc(end_date)

        # Step 1: availability
        try:
            validation = await self.validation_client.validate_booking(
                room_id, guests, start, end, baggage=baggage
            )
        except ServiceUnavailableError as e:
            log.error("booking_validation_unavailable", error=str(e))
            raise ValidationUnavailableError("Booking validation failed") from e

        if not validation.is_valid:
            log.warning("booking_validation_rejected", reasons=validation.reasons)
            raise ValidationRejectedError(
                f"Booking validation failed: {'; '.join(validation.reasons)}",
                reasons=validation.reasons,
            )

        # Step 2: charge
        try:
            payment = await self.payment_client.process_payment(
                payment_id, card_number, baggage=baggage
            )
        except ServiceUnavailableError as e:
            log.error("booking_payment_unavailable", error=str(e))
            raise PaymentUnavailableError("Payment processing failed") from e

        if not payment.success:
            log.warning("booking_payment_declined", reason=payment.message)
            raise PaymentDeclinedError(f"Payment failed: {payment.message}")

        # Step 3: publish
        booking_id = generate_booking_id()
        event = BookingEvent(
            user_id=user_id,
            room_id=room_id,
            guests=guests,
            start_date=start,
            end_date=end,
            booking_id=booking_id,
            payment_id=payment_id,
        )
        try:
            await asyncio.to_thread(
                self.publisher.publish, self.booking_topic, event.key, event, baggage
            )
        except PublishError as e:
            log.critical(
                "booking_charged_not_published",
                booking_id=booking_id,
                error=str(e),
            )
            metrics.record_charged_not_published()
            raise EventPublishError("Booking event publishing failed") from e

        return booking_id

    async def cancel(self, booking_id: str, user_id: str, baggage: str = "") -> None:
        """
        Publish a cancellation for a booking.

        Existence and ownership are not checked here.

        Raises:
            InvalidBookingRequestError: If booking id or user id is missing
            EventPublishError: If the event could not be published
        """
        log = logger.bind(booking_id=booking_id, user_id=user_id, baggage=baggage or None)
        log.info("cancellation_request_received")

        if not booking_id or not user_id:
            metrics.record_cancellation_request(InvalidBookingRequestError.outcome)
            raise InvalidBookingRequestError(
                "Missing required fields: bookingId and userId are required"
            )

        event = CancellationEvent(
            booking_id=booking_id,
            user_id=user_id,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            await asyncio.to_thread(
                self.publisher.publish, self.cancellation_topic, event.key, event, baggage
            )
        except PublishError as e:
            log.error("cancellation_publish_failed", error=str(e))
            metrics.record_cancellation_request(EventPublishError.outcome)
            raise EventPublishError("Cancellation event publishing failed") from e

        metrics.record_cancellation_request("success")
        log.info("cancellation_completed")
