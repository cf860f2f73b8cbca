"""Interfaces the fulfillment consumer dispatches events to."""
from typing import Protocol

from booking_pipeline.streaming.events import BookingEvent, CancellationEvent


class BookingSink(Protocol):
    """Turns a BookingEvent into persisted state. Raising means "retry later"."""

    async def create_booking(self, event: BookingEvent, baggage: str = "") -> None: ...


class CancellationSink(Protocol):
    """Applies a CancellationEvent. Raising means "retry later"."""

    async def cancel_booking(self, event: CancellationEvent, baggage: str = "") -> None: ...
