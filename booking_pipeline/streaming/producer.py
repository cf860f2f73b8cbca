"""
Durable Kafka event publisher.

Every publish blocks until the broker has acknowledged the write from all
in-sync replicas, so a returned call means the event is queued. Failures are
raised as PublishError and never retried behind the caller's back.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

import structlog
from confluent_kafka import KafkaError, KafkaException, Producer

from booking_pipeline.monitoring.metrics import metrics
from booking_pipeline.streaming.events import BAGGAGE_HEADER

logger = structlog.get_logger(__name__)


class SerializableEvent(Protocol):
    """Anything the publisher can put on the wire."""

    def to_json(self) -> bytes: ...


class PublishError(Exception):
    """Raised when an event could not be durably queued."""

    def __init__(self, message: str, topic: str, key: str):
        super().__init__(message)
        self.topic = topic
        self.key = key


@dataclass
class PublisherConfig:
    """
    Configuration for the event publisher.

    Attributes:
        bootstrap_servers: Kafka broker addresses
        client_id: Client identifier
        acks: Acknowledgment level ('all' for durability)
        enable_idempotence: Deduplicate producer retries on the broker
        retries: Number of retries on transient errors
        delivery_timeout_seconds: Broker-side delivery timeout (message.timeout.ms)
        delivery_report_grace_seconds: Extra wait for librdkafka to report the
            outcome once the delivery timeout has passed
        retry_backoff_ms: Backoff between producer retries
    """
    bootstrap_servers: str = "localhost:9092"
    client_id: str = "booking-publisher"
    acks: str = "all"
    enable_idempotence: bool = True
    retries: int = 5
    delivery_timeout_seconds: float = 30.0
    delivery_report_grace_seconds: float = 5.0
    retry_backoff_ms: int = 100

    @classmethod
    def from_settings(cls, settings: Any) -> "PublisherConfig":
        return cls(
            bootstrap_servers=settings.kafka_brokers,
            client_id=f"{settings.app_name}-publisher",
            delivery_timeout_seconds=settings.publish_timeout_seconds,
        )

    def to_kafka_config(self) -> Dict[str, Any]:
        """
        Convert to confluent-kafka configuration dict.

        Returns:
            Configuration dictionary for Producer
        """
        timeout_ms = int(self.delivery_timeout_seconds * 1000)
        return {
            'bootstrap.servers': self.bootstrap_servers,
            'client.id': self.client_id,
            'acks': self.acks,
            'enable.idempotence': self.enable_idempotence,
            'retries': self.retries,
            'retry.backoff.ms': self.retry_backoff_ms,
            'message.timeout.ms': timeout_ms,
            'request.timeout.ms': min(timeout_ms, 30000),
            # Same key-to-partition mapping as the Java client
            'partitioner': 'murmur2_random',
        }


@dataclass
class DeliveryReport:
    """Where an acknowledged event ended up."""
    topic: str
    partition: int
    offset: int
    latency_ms: float


class EventPublisher:
    """
    Synchronous-ack Kafka publisher keyed by booking id.

    Example:
        >>> publisher = EventPublisher(PublisherConfig(bootstrap_servers="kafka:9092"))
        >>> publisher.publish("booking-events", event.key, event, baggage="okteto-divert=alice")
        >>> publisher.close()
    """

    def __init__(self, config: PublisherConfig, producer: Optional[Any] = None):
        """
        Initialize the publisher.

        Args:
            config: Publisher configuration
            producer: Optional pre-built producer (tests inject fakes here)
        """
        self.config = config
        self.producer = producer or Producer(config.to_kafka_config())
        logger.info(
            "publisher_initialized",
            client_id=config.client_id,
            acks=config.acks,
        )

    @staticmethod
    def _build_headers(baggage: str) -> Optional[List[Tuple[str, bytes]]]:
        if not baggage:
            return None
        return [(BAGGAGE_HEADER, baggage.encode("utf-8"))]

    def publish(
        self,
        topic: str,
        key: str,
        event: SerializableEvent,
        baggage: str = "",
    ) -> DeliveryReport:
        """
        Publish an event and wait for the broker acknowledgement.

        Args:
            topic: Topic name
            key: Partition key (the booking id)
            event: Event to serialize
            baggage: Propagated baggage, sent as a message header

        Returns:
            DeliveryReport of the acknowledged write

        Raises:
            PublishError: On serialization error, broker rejection or timeout
        """
        log = logger.bind(topic=topic, key=key, baggage=baggage or None)
        start_time = time.time()

        try:
            value = event.to_json()
        except (TypeError, ValueError) as e:
            log.error("event_serialization_failed", error=str(e))
            metrics.record_event_published(topic, "failed")
            raise PublishError(f"Failed to serialize event: {e}", topic, key) from e

        delivered = threading.Event()
        outcome: Dict[str, Any] = {}

        def on_delivery(err: Optional[KafkaError], msg: Any) -> None:
            outcome["error"] = err
            outcome["message"] = msg
            delivered.set()

        log.info("publishing_event")

        try:
            self.producer.produce(
                topic=topic,
                key=key.encode("utf-8"),
                value=value,
                headers=self._build_headers(baggage),
                on_delivery=on_delivery,
            )
        except (BufferError, KafkaException) as e:
            log.error("event_produce_failed", error=str(e))
            metrics.record_event_published(topic, "failed")
            raise PublishError(f"Failed to enqueue event: {e}", topic, key) from e

        # librdkafka reports every message, as success or _MSG_TIMED_OUT, within
        # message.timeout.ms; only after that report can a failure be returned.
        deadline = (
            time.monotonic()
            + self.config.delivery_timeout_seconds
            + self.config.delivery_report_grace_seconds
        )
        while not delivered.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log.error(
                    "event_delivery_report_missing",
                    timeout_seconds=self.config.delivery_timeout_seconds,
                    grace_seconds=self.config.delivery_report_grace_seconds,
                )
                metrics.record_event_published(topic, "failed")
                raise PublishError("Timed out waiting for broker acknowledgement", topic, key)
            self.producer.poll(min(remaining, 0.1))

        err = outcome.get("error")
        if err is not None:
            log.error("event_delivery_failed", error=str(err))
            metrics.record_event_published(topic, "failed")
            raise PublishError(f"Broker rejected event: {err}", topic, key)

        msg = outcome["message"]
        latency_ms = (time.time() - start_time) * 1000
        report = DeliveryReport(
            topic=msg.topic(),
            partition=msg.partition(),
            offset=msg.offset(),
            latency_ms=latency_ms,
        )
        metrics.record_event_published(topic, "success", latency_ms / 1000)
        log.info(
            "event_published",
            partition=report.partition,
            offset=report.offset,
            latency_ms=round(latency_ms, 2),
        )
        return report

    def check_connection(self, timeout: float = 5.0) -> Dict[str, Any]:
        """
        Fetch cluster metadata to verify the brokers are reachable.

        Raises:
            KafkaException: If metadata cannot be fetched in time
        """
        cluster = self.producer.list_topics(timeout=timeout)
        return {"brokers": len(cluster.brokers), "topics": len(cluster.topics)}

    def flush(self, timeout: float = 10.0) -> int:
        """
        Wait for all messages to be delivered.

        Returns:
            Number of messages still in queue
        """
        remaining = self.producer.flush(timeout)
        if remaining > 0:
            logger.warning("publisher_flush_incomplete", remaining=remaining)
        return remaining

    def close(self) -> None:
        """Flush outstanding messages and release the producer."""
        logger.info("publisher_closing")
        self.flush()
        logger.info("publisher_closed")
