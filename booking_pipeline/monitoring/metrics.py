"""
Prometheus metrics for the booking pipeline.

Tracks:
- Booking and cancellation requests by outcome
- Validation and payment call durations
- Events published per topic
- Consumer messages by outcome
- Bookings charged but never published
"""
from prometheus_client import Counter, Gauge, Histogram

# Request metrics
booking_requests_total = Counter(
    "booking_requests_total",
    "Total number of booking requests",
    ["outcome"],  # success, or the BookingError outcome (invalid_request, payment_declined, ...)
)

cancellation_requests_total = Counter(
    "cancellation_requests_total",
    "Total number of cancellation requests",
    ["outcome"],
)

booking_request_duration_seconds = Histogram(
    "booking_request_duration_seconds",
    "End-to-end booking orchestration duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Collaborator metrics
collaborator_requests_total = Counter(
    "collaborator_requests_total",
    "Total collaborator calls",
    ["service", "status"],  # status: HTTP status code, or "error" when no response came back
)

collaborator_duration_seconds = Histogram(
    "collaborator_duration_seconds",
    "Collaborator call duration in seconds",
    ["service"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Publisher metrics
events_published_total = Counter(
    "events_published_total",
    "Total events published",
    ["topic", "status"],  # success, failed
)

publish_duration_seconds = Histogram(
    "publish_duration_seconds",
    "Time until the broker acknowledged a publish",
    ["topic"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0),
)

bookings_charged_not_published_total = Counter(
    "bookings_charged_not_published_total",
    "Bookings whose payment succeeded but whose event was never queued",
)

# Consumer metrics
consumer_messages_total = Counter(
    "consumer_messages_total",
    "Messages seen by the fulfillment consumer",
    ["topic", "outcome"],  # processed, skipped, failed, dead_lettered
)

consumer_handler_duration_seconds = Histogram(
    "consumer_handler_duration_seconds",
    "Fulfillment handler duration in seconds",
    ["topic"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

consumer_assigned_partitions = Gauge(
    "consumer_assigned_partitions",
    "Partitions currently assigned to this consumer",
)

consumer_paused_partitions = Gauge(
    "consumer_paused_partitions",
    "Partitions paused while waiting to redeliver a failed message",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_booking_request(outcome: str, duration_seconds: float) -> None:
        """Record a booking request."""
        booking_requests_total.labels(outcome=outcome).inc()
        booking_request_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_cancellation_request(outcome: str) -> None:
        """Record a cancellation request."""
        cancellation_requests_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_collaborator_call(service: str, status: str, duration_seconds: float) -> None:
        """Record a validation or payment call."""
        collaborator_requests_total.labels(service=service, status=status).inc()
        collaborator_duration_seconds.labels(service=service).observe(duration_seconds)

    @staticmethod
    def record_event_published(topic: str, status: str, duration_seconds: float = 0) -> None:
        """Record an event publish attempt."""
        events_published_total.labels(topic=topic, status=status).inc()
        if duration_seconds > 0:
            publish_duration_seconds.labels(topic=topic).observe(duration_seconds)

    @staticmethod
    def record_charged_not_published() -> None:
        """Record a payment that has no queued booking behind it."""
        bookings_charged_not_published_total.inc()

    @staticmethod
    def record_consumer_message(topic: str, outcome: str, duration_seconds: float = 0) -> None:
        """Record a consumed message."""
        consumer_messages_total.labels(topic=topic, outcome=outcome).inc()
        if duration_seconds > 0:
            consumer_handler_duration_seconds.labels(topic=topic).observe(duration_seconds)

    @staticmethod
    def set_assigned_partitions(count: int) -> None:
        """Set assigned partition count."""
        consumer_assigned_partitions.set(count)

    @staticmethod
    def set_paused_partitions(count: int) -> None:
        """Set paused partition count."""
        consumer_paused_partitions.set(count)


# Export singleton instance
metrics = MetricsCollector()
