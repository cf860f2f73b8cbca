"""Client for the room/booking directory service's availability check."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List

import structlog

from booking_pipeline.integrations.base import ServiceClient, ServiceUnavailableError
from booking_pipeline.streaming.events import format_timestamp

logger = structlog.get_logger(__name__)


@dataclass
class ValidationResult:
    """Answer of the availability check. Reasons are ordered, human readable."""
    is_valid: bool
    reasons: List[str] = field(default_factory=list)


class BookingManagementClient(ServiceClient):
    """
    Calls ``POST {base}/validate`` on the directory service.

    The service checks that the room exists, fits the guests, and is free
    for the requested dates.
    """

    service_name = "booking-management"

    async def validate_booking(
        self,
        room_id: str,
        guests: int,
        start_date: datetime,
        end_date: datetime,
        baggage: str = "",
    ) -> ValidationResult:
        """
        Ask the directory service whether a booking is possible.

        Args:
            room_id: Room internal id
            guests: Number of guests
            start_date: Start of the stay
            end_date: End of the stay
            baggage: Propagated baggage

        Returns:
            ValidationResult

        Raises:
            ServiceUnavailableError: On transport failure, non-200 status or bad body
        """
        log = logger.bind(room_id=room_id, guests=guests, baggage=baggage or None)
        log.info("booking_validation_requested")

        response = await self._post(
            "validate",
            {
                "roomId": room_id,
                "numberOfGuests": guests,
                "startDate": format_timestamp(start_date),
                "endDate": format_timestamp(end_date),
            },
            baggage=baggage,
        )

        if response.status_code != 200:
            log.error(
                "booking_validation_error_status",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise ServiceUnavailableError(
                self.service_name,
                f"returned status {response.status_code}",
                response.status_code,
            )

        body = self._json(response)
        is_valid = body.get("isValid")
        if not isinstance(is_valid, bool):
            raise ServiceUnavailableError(
                self.service_name, "response has no boolean isValid", response.status_code
            )

        reasons = [str(reason) for reason in (body.get("reasons") or [])]
        log.info("booking_validation_completed", is_valid=is_valid, reasons_count=len(reasons))
        return ValidationResult(is_valid=is_valid, reasons=reasons)
