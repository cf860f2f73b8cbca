"""
Unit tests for the environment-scoped consumer.

Covers routing, manual offset commits, redelivery after failure and the
optional dead-letter path.
"""
import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Optional

import pytest
from confluent_kafka import KafkaError, TopicPartition

from booking_pipeline.config import Settings
from booking_pipeline.streaming.consumer import (
    ConsumerConfig,
    ConsumerState,
    EnvironmentScopedConsumer,
    MessageOutcome,
)
from booking_pipeline.streaming.events import BookingEvent, CancellationEvent
from booking_pipeline.streaming.producer import EventPublisher, PublisherConfig

BOOKING_ID = "booking_1700000000_Ab3dE9"


def _booking_payload() -> bytes:
    return BookingEvent(
        user_id="alice@example.com",
        room_id="room-101",
        guests=2,
        start_date=datetime(2030, 6, 1, tzinfo=timezone.utc),
        end_date=datetime(2030, 6, 3, tzinfo=timezone.utc),
        booking_id=BOOKING_ID,
        payment_id="pay_1",
    ).to_json()


def _cancellation_payload() -> bytes:
    return CancellationEvent(
        booking_id=BOOKING_ID,
        user_id="alice",
        timestamp=datetime(2030, 1, 1, tzinfo=timezone.utc),
    ).to_json()


def _headers(divert: Optional[str]) -> Any:
    if divert is None:
        return None
    return [("baggage", f"okteto-divert={divert}".encode())]


@pytest.fixture
def sinks(mocker: Any) -> Any:
    """Booking and cancellation sinks that succeed."""
    sink = mocker.AsyncMock()
    sink.create_booking.return_value = None
    sink.cancel_booking.return_value = None
    return sink


def _consumer(
    fake_consumer: Any,
    sinks: Any,
    environment: str = "",
    **config_overrides: Any,
) -> EnvironmentScopedConsumer:
    dead_letter_publisher = config_overrides.pop("dead_letter_publisher", None)
    config = ConsumerConfig(retry_backoff_seconds=0, **config_overrides)
    return EnvironmentScopedConsumer(
        config,
        booking_sink=sinks,
        cancellation_sink=sinks,
        environment=environment,
        consumer=fake_consumer,
        dead_letter_publisher=dead_letter_publisher,
    )


class TestConsumerConfig:
    """Test suite for ConsumerConfig."""

    @pytest.mark.unit
    def test_offsets_are_manual(self) -> None:
        """The client never advances offsets on its own."""
        config = ConsumerConfig().to_kafka_config()

        assert config["enable.auto.commit"] is False
        assert config["enable.auto.offset.store"] is False

    @pytest.mark.unit
    def test_group_is_scoped_to_namespace(self, test_settings: Settings) -> None:
        """Each namespace gets its own group and so its own copy of every message."""
        config = ConsumerConfig.from_settings(test_settings)

        assert config.group_id == "worker-group-alice"
        assert config.topics == ["booking-events", "booking-cancellations"]
        assert Settings(okteto_namespace="").consumer_group_id == "worker-group"


class TestRouting:
    """Routing and commit behaviour per message."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_diverted_message_for_this_environment_is_processed(
        self, fake_consumer: Any, sinks: Any, make_message: Any
    ) -> None:
        """A message diverted here is handled and its offset committed."""
        consumer = _consumer(fake_consumer, sinks, environment="alice")
        msg = fake_consumer.add(
            make_message("booking-events", _booking_payload(), key=BOOKING_ID.encode(), headers=_headers("alice"))
        )

        outcome = await consumer.handle_message(msg)

        assert outcome is MessageOutcome.PROCESSED
        event = sinks.create_booking.await_args.args[0]
        assert event.booking_id == BOOKING_ID
        assert sinks.create_booking.await_args.kwargs["baggage"] == "okteto-divert=alice"
        assert fake_consumer.committed_offset("booking-events") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_message_for_other_environment_is_skipped_uncommitted(
        self, fake_consumer: Any, sinks: Any, make_message: Any
    ) -> None:
        """Skipped messages are left uncommitted by default."""
        consumer = _consumer(fake_consumer, sinks, environment="alice")
        msg = fake_consumer.add(make_message("booking-events", _booking_payload(), headers=_headers("bob")))

        outcome = await consumer.handle_message(msg)

        assert outcome is MessageOutcome.SKIPPED
        sinks.create_booking.assert_not_awaited()
        assert fake_consumer.commits == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_skipped_message_committed_when_configured(
        self, fake_consumer: Any, sinks: Any, make_message: Any
    ) -> None:
        """commit_skipped acknowledges messages owned by other environments."""
        consumer = _consumer(fake_consumer, sinks, environment="alice", commit_skipped=True)
        msg = fake_consumer.add(make_message("booking-events", _booking_payload(), headers=_headers("bob")))

        assert await consumer.handle_message(msg) is MessageOutcome.SKIPPED
        assert fake_consumer.committed_offset("booking-events") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "environment, expected",
        [("", MessageOutcome.PROCESSED), ("alice", MessageOutcome.SKIPPED)],
    )
    async def test_untagged_message_goes_to_baseline_only(
        self,
        fake_consumer: Any,
        sinks: Any,
        make_message: Any,
        environment: str,
        expected: MessageOutcome,
    ) -> None:
        """Untagged traffic is handled by the baseline instance alone."""
        consumer = _consumer(fake_consumer, sinks, environment=environment)
        msg = fake_consumer.add(make_message("booking-events", _booking_payload()))

        assert await consumer.handle_message(msg) is expected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancellation_dispatched_to_cancellation_sink(
        self, fake_consumer: Any, sinks: Any, make_message: Any
    ) -> None:
        """Dispatch is by topic."""
        consumer = _consumer(fake_consumer, sinks)
        msg = fake_consumer.add(make_message("booking-cancellations", _cancellation_payload()))

        assert await consumer.handle_message(msg) is MessageOutcome.PROCESSED
        sinks.cancel_booking.assert_awaited_once()
        sinks.create_booking.assert_not_awaited()
        assert fake_consumer.committed_offset("booking-cancellations") == 1


class TestFailureHandling:
    """Redelivery and dead-lettering."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handler_failure_leaves_offset_and_rewinds(
        self, fake_consumer: Any, sinks: Any, make_message: Any
    ) -> None:
        """A failing sink means no commit; the partition is rewound and paused."""
        sinks.create_booking.side_effect = RuntimeError("room not found")
        consumer = _consumer(fake_consumer, sinks)
        fake_consumer.add(make_message("booking-events", b"{}"))
        msg = fake_consumer.add(make_message("booking-events", _booking_payload()))

        outcome = await consumer.handle_message(msg)

        assert outcome is MessageOutcome.FAILED
        assert fake_consumer.commits == []
        assert fake_consumer.seeks == [("booking-events", 0, 1)]
        assert ("booking-events", 0) in fake_consumer.paused

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "topic, payload",
        [
            ("booking-events", b"not json"),
            ("booking-events", b'{"bookingId": "x"}'),
            ("some-other-topic", b"{}"),
        ],
    )
    async def test_undecodable_or_unroutable_messages_are_not_committed(
        self, fake_consumer: Any, sinks: Any, make_message: Any, topic: str, payload: bytes
    ) -> None:
        """Decode errors and unknown topics count as handler failures."""
        consumer = _consumer(fake_consumer, sinks)
        msg = fake_consumer.add(make_message(topic, payload))

        assert await consumer.handle_message(msg) is MessageOutcome.FAILED
        assert fake_consumer.commits == []

    @pytest.mark.unit
    def test_backoff_grows_and_is_capped(self, fake_consumer: Any, sinks: Any) -> None:
        """Redelivery delay doubles per attempt up to the cap."""
        consumer = EnvironmentScopedConsumer(
            ConsumerConfig(retry_backoff_seconds=1.0, max_retry_backoff_seconds=5.0),
            sinks,
            sinks,
            consumer=fake_consumer,
        )

        assert [consumer._retry_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dead_letter_after_max_attempts(
        self, fake_consumer: Any, sinks: Any, make_message: Any, make_producer: Any
    ) -> None:
        """With a dead-letter topic, an exhausted message is parked then committed."""
        sinks.create_booking.side_effect = RuntimeError("room not found")
        dlq_producer = make_producer()
        consumer = _consumer(
            fake_consumer,
            sinks,
            dead_letter_topic="booking-events-dlq",
            max_delivery_attempts=2,
            dead_letter_publisher=EventPublisher(PublisherConfig(), producer=dlq_producer),
        )
        msg = fake_consumer.add(
            make_message("booking-events", _booking_payload(), key=BOOKING_ID.encode(), headers=_headers(None))
        )

        assert await consumer.handle_message(msg) is MessageOutcome.FAILED
        assert dlq_producer.produced == []

        assert await consumer.handle_message(msg) is MessageOutcome.DEAD_LETTERED
        assert fake_consumer.committed_offset("booking-events") == 1

        parked = dlq_producer.produced[0]
        assert parked.topic() == "booking-events-dlq"
        assert parked.key() == BOOKING_ID.encode()
        record = json.loads(parked.value())
        assert record["original_topic"] == "booking-events"
        assert record["original_offset"] == 0
        assert record["error_type"] == "RuntimeError"
        assert record["attempts"] == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dead_letter_publish_failure_keeps_message(
        self, fake_consumer: Any, sinks: Any, make_message: Any, make_producer: Any
    ) -> None:
        """If parking fails the message stays uncommitted."""
        sinks.create_booking.side_effect = RuntimeError("store down")
        dlq_producer = make_producer(delivery_error=KafkaError(KafkaError._MSG_TIMED_OUT))
        consumer = _consumer(
            fake_consumer,
            sinks,
            dead_letter_topic="booking-events-dlq",
            max_delivery_attempts=1,
            dead_letter_publisher=EventPublisher(PublisherConfig(), producer=dlq_producer),
        )
        msg = fake_consumer.add(make_message("booking-events", _booking_payload()))

        assert await consumer.handle_message(msg) is MessageOutcome.FAILED
        assert fake_consumer.commits == []

    @pytest.mark.unit
    def test_revocation_forgets_partition_state(self, fake_consumer: Any, sinks: Any) -> None:
        """Pause and attempt bookkeeping is dropped for revoked partitions."""
        consumer = _consumer(fake_consumer, sinks)
        consumer._on_partition_assign(fake_consumer, [TopicPartition("booking-events", 0)])
        consumer._paused[("booking-events", 0)] = 0.0
        consumer._attempts[("booking-events", 0, 5)] = 3

        consumer._on_partition_revoke(fake_consumer, [TopicPartition("booking-events", 0)])

        assert consumer._paused == {}
        assert consumer._attempts == {}


class TestRunLoop:
    """Lifecycle of the poll loop."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_message_is_redelivered_until_it_succeeds(
        self, fake_consumer: Any, sinks: Any, make_message: Any
    ) -> None:
        """At-least-once: the same offset comes back after a failure."""
        sinks.create_booking.side_effect = [RuntimeError("room not found"), None]
        consumer = _consumer(fake_consumer, sinks)
        fake_consumer.add(make_message("booking-events", _booking_payload()))
        fake_consumer.idle_callback = consumer.shutdown

        await consumer.run()

        assert sinks.create_booking.await_count == 2
        assert fake_consumer.commits == [("booking-events", 0, 1)]
        assert fake_consumer.subscribed == ["booking-events", "booking-cancellations"]
        assert fake_consumer.closed is True
        assert consumer.state is ConsumerState.IDLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shutdown_drains_in_flight_message(
        self, fake_consumer: Any, sinks: Any, make_message: Any
    ) -> None:
        """A handler running at shutdown finishes and is committed; nothing after it is touched."""
        consumer = _consumer(fake_consumer, sinks)

        async def create_booking(event: Any, baggage: str = "") -> None:
            consumer.shutdown()
            await asyncio.sleep(0)

        sinks.create_booking.side_effect = create_booking
        fake_consumer.add(make_message("booking-events", _booking_payload()))
        fake_consumer.add(make_message("booking-events", _booking_payload()))

        await consumer.run()

        sinks.create_booking.assert_awaited_once()
        assert fake_consumer.commits == [("booking-events", 0, 1)]
        assert fake_consumer.closed is True
        assert consumer.state is ConsumerState.IDLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_message_fetched_after_shutdown_is_left_uncommitted(
        self, fake_consumer: Any, sinks: Any, make_message: Any, mocker: Any
    ) -> None:
        """A message that arrives while stopping is neither handled nor committed."""
        consumer = _consumer(fake_consumer, sinks)
        fake_consumer.add(make_message("booking-events", _booking_payload()))
        poll = fake_consumer.poll

        def poll_then_stop(timeout: float = 1.0) -> Any:
            msg = poll(timeout)
            consumer.shutdown()
            return msg

        mocker.patch.object(fake_consumer, "poll", side_effect=poll_then_stop)

        await consumer.run()

        sinks.create_booking.assert_not_awaited()
        assert fake_consumer.commits == []
        assert fake_consumer.closed is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partition_eof_events_are_ignored(
        self, fake_consumer: Any, sinks: Any, make_message: Any
    ) -> None:
        """Informational errors from the client do not stop the loop."""
        consumer = _consumer(fake_consumer, sinks)
        fake_consumer.add(
            make_message("booking-events", None, error=KafkaError(KafkaError._PARTITION_EOF))
        )
        fake_consumer.add(make_message("booking-events", _booking_payload()))
        fake_consumer.idle_callback = consumer.shutdown

        await consumer.run()

        sinks.create_booking.assert_awaited_once()
        assert fake_consumer.committed_offset("booking-events") == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_closed_consumer_cannot_run_again(self, fake_consumer: Any, sinks: Any) -> None:
        """close() leaves the group for good."""
        consumer = _consumer(fake_consumer, sinks)
        consumer.close()
        consumer.shutdown()  # no-op when not running

        with pytest.raises(RuntimeError, match="closed"):
            await consumer.run()
