"""Kafka event model, publisher and environment divert routing."""
from .events import (
    BOOKING_CANCELLATIONS_TOPIC,
    BOOKING_EVENTS_TOPIC,
    BookingEvent,
    CancellationEvent,
    EventDecodeError,
)
from .producer import EventPublisher, PublishError, PublisherConfig
from .routing import extract_baggage, extract_divert, parse_baggage, should_process

__all__ = [
    "BOOKING_CANCELLATIONS_TOPIC",
    "BOOKING_EVENTS_TOPIC",
    "BookingEvent",
    "CancellationEvent",
    "EventDecodeError",
    "EventPublisher",
    "PublishError",
    "PublisherConfig",
    "extract_baggage",
    "extract_divert",
    "parse_baggage",
    "should_process",
]
