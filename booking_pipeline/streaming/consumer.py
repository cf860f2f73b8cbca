"""
Environment-scoped Kafka consumer for booking fulfillment.

Several environments (production plus developer sandboxes) share one cluster.
Each environment runs its own consumer group, so every environment sees every
message, and each instance only handles the messages whose okteto-divert
baggage names it.

Offsets are committed by hand, one message at a time, only after the sink
succeeded. A failing message is rewound and its partition paused for a
backoff, so it is redelivered in order until it succeeds (or, when a
dead-letter topic is configured, until it runs out of attempts).
"""

import asyncio
import json
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from confluent_kafka import Consumer, KafkaError, KafkaException, TopicPartition

from booking_pipeline.core.sinks import BookingSink, CancellationSink
from booking_pipeline.monitoring.metrics import metrics
from booking_pipeline.streaming.events import (
    BOOKING_CANCELLATIONS_TOPIC,
    BOOKING_EVENTS_TOPIC,
    BookingEvent,
    CancellationEvent,
)
from booking_pipeline.streaming.producer import EventPublisher, PublishError
from booking_pipeline.streaming.routing import extract_baggage, extract_divert, should_process

logger = structlog.get_logger(__name__)


class ConsumerState(Enum):
    """Lifecycle of a consumer instance."""
    IDLE = "idle"
    CONSUMING = "consuming"
    STOPPING = "stopping"


class MessageOutcome(Enum):
    """What happened to a single delivered message."""
    PROCESSED = "processed"  # Sink succeeded, offset committed
    SKIPPED = "skipped"  # Diverted to another environment
    FAILED = "failed"  # Sink failed, message rewound for redelivery
    DEAD_LETTERED = "dead_lettered"  # Out of attempts, parked and committed


class UnknownTopicError(Exception):
    """Raised for a message from a topic without a handler."""

    pass


@dataclass
class ConsumerConfig:
    """
    Configuration for the fulfillment consumer.

    Attributes:
        bootstrap_servers: Kafka broker addresses
        group_id: Consumer group ID, one per environment namespace
        booking_topic: Topic carrying BookingEvents
        cancellation_topic: Topic carrying CancellationEvents
        client_id: Client identifier
        auto_offset_reset: Where a brand new group starts reading
        session_timeout_ms: Session timeout
        heartbeat_interval_ms: Heartbeat interval
        max_poll_interval_ms: Max time between polls
        poll_timeout_seconds: How long one poll may block
        retry_backoff_seconds: First redelivery delay after a failure
        max_retry_backoff_seconds: Cap for the exponential redelivery delay
        commit_skipped: Also commit messages that belong to another environment
        dead_letter_topic: Where exhausted messages go (None = retry forever)
        max_delivery_attempts: Attempts before dead-lettering
    """
    bootstrap_servers: str = "localhost:9092"
    group_id: str = "worker-group"
    booking_topic: str = BOOKING_EVENTS_TOPIC
    cancellation_topic: str = BOOKING_CANCELLATIONS_TOPIC
    client_id: str = "booking-fulfillment-worker"
    auto_offset_reset: str = "earliest"
    session_timeout_ms: int = 10000
    heartbeat_interval_ms: int = 3000
    max_poll_interval_ms: int = 300000
    poll_timeout_seconds: float = 1.0
    retry_backoff_seconds: float = 1.0
    max_retry_backoff_seconds: float = 30.0
    commit_skipped: bool = False
    dead_letter_topic: Optional[str] = None
    max_delivery_attempts: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "ConsumerConfig":
        return cls(
            bootstrap_servers=settings.kafka_brokers,
            group_id=settings.consumer_group_id,
            booking_topic=settings.booking_events_topic,
            cancellation_topic=settings.booking_cancellations_topic,
            client_id=f"{settings.app_name}-worker",
            session_timeout_ms=settings.consumer_session_timeout_ms,
            poll_timeout_seconds=settings.consumer_poll_timeout_seconds,
            retry_backoff_seconds=settings.consumer_retry_backoff_seconds,
            max_retry_backoff_seconds=settings.consumer_max_retry_backoff_seconds,
            commit_skipped=settings.consumer_commit_skipped,
            dead_letter_topic=settings.dead_letter_topic,
            max_delivery_attempts=settings.max_delivery_attempts,
        )

    @property
    def topics(self) -> List[str]:
        return [self.booking_topic, self.cancellation_topic]

    def to_kafka_config(self) -> Dict[str, Any]:
        """
        Convert to confluent-kafka configuration dict.

        Auto commit and automatic offset storage are both disabled: the
        consumer alone decides when an offset moves.
        """
        return {
            'bootstrap.servers': self.bootstrap_servers,
            'group.id': self.group_id,
            'client.id': self.client_id,
            'auto.offset.reset': self.auto_offset_reset,
            'enable.auto.commit': False,
            'enable.auto.offset.store': False,
            'partition.assignment.strategy': 'roundrobin',
            'session.timeout.ms': self.session_timeout_ms,
            'heartbeat.interval.ms': self.heartbeat_interval_ms,
            'max.poll.interval.ms': self.max_poll_interval_ms,
        }


@dataclass
class DeadLetterRecord:
    """Envelope published to the dead-letter topic."""
    original_topic: str
    original_partition: int
    original_offset: int
    original_key: Optional[str]
    original_value: Optional[str]
    error_type: str
    error_message: str
    attempts: int
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_json(self) -> bytes:
        return json.dumps(self.__dict__).encode("utf-8")


PartitionKey = Tuple[str, int]
Handler = Callable[[bytes, str], Awaitable[None]]


class EnvironmentScopedConsumer:
    """
    Consumes booking topics for one environment and feeds the fulfillment sinks.

    Example:
        >>> config = ConsumerConfig(group_id="worker-group-alice")
        >>> consumer = EnvironmentScopedConsumer(config, writer, writer, environment="alice")
        >>> await consumer.run()  # until shutdown() is called
    """

    def __init__(
        self,
        config: ConsumerConfig,
        booking_sink: BookingSink,
        cancellation_sink: CancellationSink,
        environment: str = "",
        consumer: Optional[Any] = None,
        dead_letter_publisher: Optional[EventPublisher] = None,
    ):
        """
        Initialize the consumer.

        Args:
            config: Consumer configuration
            booking_sink: Receives BookingEvents
            cancellation_sink: Receives CancellationEvents
            environment: Divert tag owned by this instance ("" = baseline)
            consumer: Optional pre-built Kafka consumer (tests inject fakes here)
            dead_letter_publisher: Publisher used for the dead-letter topic
        """
        self.config = config
        self.environment = environment
        self.booking_sink = booking_sink
        self.cancellation_sink = cancellation_sink
        self.dead_letter_publisher = dead_letter_publisher
        self.consumer = consumer or Consumer(config.to_kafka_config())

        self._handlers: Dict[str, Handler] = {
            config.booking_topic: self._handle_booking,
            config.cancellation_topic: self._handle_cancellation,
        }

        self.state = ConsumerState.IDLE
        self.running = False
        self.shutdown_lock = threading.Lock()
        self._closed = False

        self._assigned: set[PartitionKey] = set()
        # (topic, partition, offset) -> failed attempts so far
        self._attempts: Dict[Tuple[str, int, int], int] = {}
        # (topic, partition) -> monotonic time at which to resume
        self._paused: Dict[PartitionKey, float] = {}

        logger.info(
            "consumer_initialized",
            group_id=config.group_id,
            topics=config.topics,
            environment=environment or None,
        )

    def _on_partition_assign(self, consumer: Any, partitions: List[TopicPartition]) -> None:
        for partition in partitions:
            self._assigned.add((partition.topic, partition.partition))
        metrics.set_assigned_partitions(len(self._assigned))
        logger.info(
            "partitions_assigned",
            partitions=[f"{p.topic}[{p.partition}]" for p in partitions],
        )

    def _on_partition_revoke(self, consumer: Any, partitions: List[TopicPartition]) -> None:
        # Nothing to flush: offsets are committed synchronously per message.
        for partition in partitions:
            key = (partition.topic, partition.partition)
            self._assigned.discard(key)
            self._paused.pop(key, None)
            for attempt_key in [k for k in self._attempts if k[:2] == key]:
                del self._attempts[attempt_key]
        metrics.set_assigned_partitions(len(self._assigned))
        metrics.set_paused_partitions(len(self._paused))
        logger.info(
            "partitions_revoked",
            partitions=[f"{p.topic}[{p.partition}]" for p in partitions],
        )

    async def run(self) -> None:
        """
        Join the group and consume until shutdown() is called.

        The in-flight message is always finished before the loop exits.
        The group membership is closed on the way out.
        """
        if self._closed:
            raise RuntimeError("Consumer has been closed")
        if self.state is not ConsumerState.IDLE:
            raise RuntimeError(f"Consumer is already {self.state.value}")

        self.consumer.subscribe(
            self.config.topics,
            on_assign=self._on_partition_assign,
            on_revoke=self._on_partition_revoke,
            on_lost=self._on_partition_revoke,
        )
        self.running = True
        self.state = ConsumerState.CONSUMING

        logger.info(
            "consumer_started",
            group_id=self.config.group_id,
            topics=self.config.topics,
            environment=self.environment or None,
        )

        try:
            while self.running:
                self._resume_due_partitions()

                msg = await asyncio.to_thread(
                    self.consumer.poll, self.config.poll_timeout_seconds
                )
                if msg is None:
                    continue
                if not self.running:
                    # Fetched after shutdown: left uncommitted for the next owner
                    break

                error = msg.error()
                if error is not None:
                    if error.code() == KafkaError._PARTITION_EOF:
                        continue
                    if error.fatal():
                        logger.error("consumer_fatal_error", error=str(error))
                        raise KafkaException(error)
                    logger.error("consumer_error", error=str(error))
                    continue

                await self.handle_message(msg)
        finally:
            self.close()

    async def handle_message(self, msg: Any) -> MessageOutcome:
        """
        Route, dispatch and acknowledge one message.

        Args:
            msg: A confluent-kafka Message (or anything with the same accessors)

        Returns:
            What happened to the message
        """
        topic = msg.topic()
        raw_key = msg.key()
        key = raw_key.decode("utf-8", errors="replace") if raw_key else None
        baggage = extract_baggage(msg.headers())
        divert = extract_divert(baggage)

        log = logger.bind(
            topic=topic,
            partition=msg.partition(),
            offset=msg.offset(),
            key=key,
            baggage=baggage or None,
        )
        log.info("message_received")

        if not should_process(divert, self.environment):
            log.info(
                "message_not_for_environment",
                divert=divert or None,
                environment=self.environment or None,
            )
            if self.config.commit_skipped:
                await self._commit(msg)
            metrics.record_consumer_message(topic, MessageOutcome.SKIPPED.value)
            return MessageOutcome.SKIPPED

        start_time = time.time()
        try:
            handler = self._handlers.get(topic)
            if handler is None:
                raise UnknownTopicError(f"No handler for topic {topic}")
            await handler(msg.value(), baggage)
        except Exception as e:
            return await self._handle_failure(msg, e, log)

        duration = time.time() - start_time
        self._attempts.pop((topic, msg.partition(), msg.offset()), None)
        await self._commit(msg)
        metrics.record_consumer_message(topic, MessageOutcome.PROCESSED.value, duration)
        log.info("message_processed", duration_ms=round(duration * 1000, 2))
        return MessageOutcome.PROCESSED

    async def _handle_booking(self, payload: bytes, baggage: str) -> None:
        event = BookingEvent.from_json(payload)
        await self.booking_sink.create_booking(event, baggage=baggage)

    async def _handle_cancellation(self, payload: bytes, baggage: str) -> None:
        event = CancellationEvent.from_json(payload)
        await self.cancellation_sink.cancel_booking(event, baggage=baggage)

    async def _handle_failure(self, msg: Any, error: Exception, log: Any) -> MessageOutcome:
        topic, partition, offset = msg.topic(), msg.partition(), msg.offset()
        attempt_key = (topic, partition, offset)
        attempts = self._attempts.get(attempt_key, 0) + 1
        self._attempts[attempt_key] = attempts

        log.error(
            "message_handling_failed",
            error=str(error),
            error_type=type(error).__name__,
            attempt=attempts,
        )

        if self._should_dead_letter(attempts):
            try:
                await asyncio.to_thread(self._send_to_dead_letter, msg, error, attempts)
            except PublishError as dlq_error:
                log.error("dead_letter_publish_failed", error=str(dlq_error))
            else:
                self._attempts.pop(attempt_key, None)
                await self._commit(msg)
                metrics.record_consumer_message(topic, MessageOutcome.DEAD_LETTERED.value)
                log.warning(
                    "message_dead_lettered",
                    dead_letter_topic=self.config.dead_letter_topic,
                    attempts=attempts,
                )
                return MessageOutcome.DEAD_LETTERED

        self._schedule_redelivery(topic, partition, offset, attempts, log)
        metrics.record_consumer_message(topic, MessageOutcome.FAILED.value)
        return MessageOutcome.FAILED

    def _should_dead_letter(self, attempts: int) -> bool:
        return (
            self.config.dead_letter_topic is not None
            and self.dead_letter_publisher is not None
            and self.config.max_delivery_attempts is not None
            and attempts >= self.config.max_delivery_attempts
        )

    def _send_to_dead_letter(self, msg: Any, error: Exception, attempts: int) -> None:
        raw_key = msg.key()
        raw_value = msg.value()
        record = DeadLetterRecord(
            original_topic=msg.topic(),
            original_partition=msg.partition(),
            original_offset=msg.offset(),
            original_key=raw_key.decode("utf-8", errors="replace") if raw_key else None,
            original_value=raw_value.decode("utf-8", errors="replace") if raw_value else None,
            error_type=type(error).__name__,
            error_message=str(error),
            attempts=attempts,
        )
        self.dead_letter_publisher.publish(
            self.config.dead_letter_topic,
            record.original_key or "",
            record,
            baggage=extract_baggage(msg.headers()),
        )

    def _retry_delay(self, attempts: int) -> float:
        delay = self.config.retry_backoff_seconds * (2 ** (attempts - 1))
        return min(delay, self.config.max_retry_backoff_seconds)

    def _schedule_redelivery(
        self, topic: str, partition: int, offset: int, attempts: int, log: Any
    ) -> None:
        """Rewind the partition to the failed offset and pause it for a backoff."""
        delay = self._retry_delay(attempts)
        try:
            self.consumer.seek(TopicPartition(topic, partition, offset))
            self.consumer.pause([TopicPartition(topic, partition)])
        except KafkaException as e:
            # Partition moved to another member; it resumes from the last commit.
            log.warning("message_rewind_failed", error=str(e))
            return

        self._paused[(topic, partition)] = time.monotonic() + delay
        metrics.set_paused_partitions(len(self._paused))
        log.warning("message_redelivery_scheduled", retry_in_seconds=delay, attempt=attempts)

    def _resume_due_partitions(self) -> None:
        if not self._paused:
            return
        now = time.monotonic()
        due = [key for key, resume_at in self._paused.items() if resume_at <= now]
        if not due:
            return
        for key in due:
            del self._paused[key]
        try:
            self.consumer.resume([TopicPartition(topic, partition) for topic, partition in due])
        except KafkaException as e:
            logger.warning("partition_resume_failed", error=str(e))
        metrics.set_paused_partitions(len(self._paused))
        logger.info("partitions_resumed", partitions=[f"{t}[{p}]" for t, p in due])

    async def _commit(self, msg: Any) -> None:
        """Synchronously commit the offset after msg."""
        offsets = [TopicPartition(msg.topic(), msg.partition(), msg.offset() + 1)]
        try:
            await asyncio.to_thread(self.consumer.commit, offsets=offsets, asynchronous=False)
        except KafkaException as e:
            # The message stays eligible for redelivery; sinks tolerate duplicates.
            logger.error(
                "offset_commit_failed",
                topic=msg.topic(),
                partition=msg.partition(),
                offset=msg.offset(),
                error=str(e),
            )
            return
        logger.debug(
            "offset_committed",
            topic=msg.topic(),
            partition=msg.partition(),
            offset=msg.offset() + 1,
        )

    def shutdown(self) -> None:
        """Ask the poll loop to stop after the in-flight message."""
        with self.shutdown_lock:
            if not self.running:
                return
            self.running = False
            self.state = ConsumerState.STOPPING
        logger.info("consumer_shutdown_requested")

    def close(self) -> None:
        """Leave the consumer group and release resources."""
        if self._closed:
            return
        self._closed = True
        self.running = False
        self.state = ConsumerState.STOPPING
        logger.info("consumer_closing", group_id=self.config.group_id)

        try:
            self.consumer.close()
        except KafkaException as e:
            logger.error("consumer_close_failed", error=str(e))

        if self.dead_letter_publisher is not None:
            self.dead_letter_publisher.close()

        self._assigned.clear()
        self._paused.clear()
        metrics.set_assigned_partitions(0)
        metrics.set_paused_partitions(0)
        self.state = ConsumerState.IDLE
        logger.info("consumer_closed", group_id=self.config.group_id)
