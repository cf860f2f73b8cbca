"""
Booking fulfillment background worker.

Consumes booking and cancellation events for this environment and writes
them to the booking store.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog
from prometheus_client import start_http_server

from booking_pipeline.config import Settings, get_settings
from booking_pipeline.core.fulfillment_writer import FulfillmentWriter
from booking_pipeline.database.connection import close_db, get_session_factory, init_db
from booking_pipeline.monitoring.logging import setup_logging
from booking_pipeline.streaming.consumer import ConsumerConfig, EnvironmentScopedConsumer
from booking_pipeline.streaming.producer import EventPublisher, PublisherConfig

logger = structlog.get_logger(__name__)


def build_consumer(
    settings: Settings,
    writer: FulfillmentWriter,
    consumer: Optional[Any] = None,
) -> EnvironmentScopedConsumer:
    """
    Assemble the environment-scoped consumer from settings.

    A dead-letter publisher is only created when a dead-letter topic is set.
    """
    dead_letter_publisher = None
    if settings.dead_letter_topic:
        dead_letter_publisher = EventPublisher(PublisherConfig.from_settings(settings))

    return EnvironmentScopedConsumer(
        ConsumerConfig.from_settings(settings),
        booking_sink=writer,
        cancellation_sink=writer,
        environment=settings.okteto_diverted_environment,
        consumer=consumer,
        dead_letter_publisher=dead_letter_publisher,
    )


async def start_fulfillment_worker() -> None:
    """
    Start the fulfillment worker.

    Runs until SIGINT or SIGTERM; the in-flight message is finished first.
    """
    setup_logging(service="booking-worker")
    settings = get_settings()

    logger.info(
        "fulfillment_worker_starting",
        group_id=settings.consumer_group_id,
        environment=settings.okteto_diverted_environment or None,
        namespace=settings.okteto_namespace or None,
    )

    if settings.worker_metrics_port:
        start_http_server(settings.worker_metrics_port)
        logger.info("worker_metrics_server_started", port=settings.worker_metrics_port)

    if settings.database_auto_create:
        await init_db()
        logger.info("database_initialized")

    writer = FulfillmentWriter(get_session_factory())
    consumer = build_consumer(settings, writer)

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("fulfillment_worker_shutdown_signal_received", signal=sig)
        consumer.shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await consumer.run()
    except Exception as e:
        logger.error("fulfillment_worker_failed", error=str(e), error_type=type(e).__name__)
        raise
    finally:
        await close_db()
        logger.info("fulfillment_worker_stopped")


def main() -> None:
    """Console entry point."""
    asyncio.run(start_fulfillment_worker())


if __name__ == "__main__":
    main()
