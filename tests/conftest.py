"""
Pytest configuration and fixtures.

Kafka is replaced by in-memory fakes exposing the slice of the
confluent-kafka Consumer/Producer API the pipeline uses. The store runs on
SQLite through aiosqlite.
"""
import itertools
import time
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from confluent_kafka import KafkaError, TopicPartition
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from booking_pipeline.api.main import create_app
from booking_pipeline.config import Settings
from booking_pipeline.core.booking_orchestrator import BookingOrchestrator
from booking_pipeline.core.fulfillment_writer import FulfillmentWriter
from booking_pipeline.database.connection import create_session_factory, init_db
from booking_pipeline.database.models import Room, User
from booking_pipeline.integrations.booking_management_client import ValidationResult
from booking_pipeline.integrations.payment_client import PaymentResult
from booking_pipeline.monitoring.health import HealthCheck
from booking_pipeline.streaming.producer import EventPublisher, PublisherConfig


class FakeMessage:
    """Stand-in for confluent_kafka.Message."""

    def __init__(
        self,
        topic: str,
        value: Optional[bytes],
        key: Optional[bytes] = None,
        headers: Optional[List[Tuple[str, bytes]]] = None,
        partition: int = 0,
        offset: int = 0,
        error: Optional[KafkaError] = None,
    ):
        self._topic = topic
        self._value = value
        self._key = key
        self._headers = headers
        self._partition = partition
        self._offset = offset
        self._error = error

    def topic(self) -> str:
        return self._topic

    def partition(self) -> int:
        return self._partition

    def offset(self) -> int:
        return self._offset

    def key(self) -> Optional[bytes]:
        return self._key

    def value(self) -> Optional[bytes]:
        return self._value

    def headers(self) -> Optional[List[Tuple[str, bytes]]]:
        return self._headers

    def error(self) -> Optional[KafkaError]:
        return self._error


class FakeConsumer:
    """
    In-memory consumer over per-partition logs.

    poll() hands out the next message of the first non-paused partition with
    anything left; seek() moves a partition's position. When nothing is left
    ``idle_callback`` is invoked, which tests use to stop the run loop.
    """

    def __init__(self) -> None:
        self.logs: Dict[Tuple[str, int], List[FakeMessage]] = {}
        self.positions: Dict[Tuple[str, int], int] = {}
        self.paused: set = set()
        self.commits: List[Tuple[str, int, int]] = []
        self.seeks: List[Tuple[str, int, int]] = []
        self.subscribed: List[str] = []
        self.callbacks: Dict[str, Callable] = {}
        self.assigned = False
        self.closed = False
        self.idle_callback: Optional[Callable[[], None]] = None

    def add(self, message: FakeMessage) -> FakeMessage:
        log = self.logs.setdefault((message.topic(), message.partition()), [])
        message._offset = len(log)
        log.append(message)
        self.positions.setdefault((message.topic(), message.partition()), 0)
        return message

    def subscribe(self, topics: List[str], **callbacks: Callable) -> None:
        self.subscribed = list(topics)
        self.callbacks = callbacks

    def poll(self, timeout: float = 1.0) -> Optional[FakeMessage]:
        if not self.assigned and "on_assign" in self.callbacks:
            self.assigned = True
            self.callbacks["on_assign"](self, [TopicPartition(t, p) for t, p in self.logs])

        for key, log in self.logs.items():
            if key in self.paused:
                continue
            position = self.positions[key]
            if position < len(log):
                self.positions[key] = position + 1
                return log[position]

        if self.idle_callback is not None:
            self.idle_callback()
        return None

    def commit(self, offsets: List[TopicPartition], asynchronous: bool = True) -> List[TopicPartition]:
        for tp in offsets:
            self.commits.append((tp.topic, tp.partition, tp.offset))
        return offsets

    def seek(self, partition: TopicPartition) -> None:
        self.seeks.append((partition.topic, partition.partition, partition.offset))
        self.positions[(partition.topic, partition.partition)] = partition.offset

    def pause(self, partitions: List[TopicPartition]) -> None:
        for tp in partitions:
            self.paused.add((tp.topic, tp.partition))

    def resume(self, partitions: List[TopicPartition]) -> None:
        for tp in partitions:
            self.paused.discard((tp.topic, tp.partition))

    def close(self) -> None:
        self.closed = True

    def committed_offset(self, topic: str, partition: int = 0) -> Optional[int]:
        offsets = [o for t, p, o in self.commits if t == topic and p == partition]
        return offsets[-1] if offsets else None


class _Cluster:
    brokers = {1: "broker-1"}
    topics = {"booking-events": None, "booking-cancellations": None}


class FakeProducer:
    """
    In-memory producer.

    Delivery callbacks fire on poll(). ``delivery_error`` makes every delivery
    fail; ``acknowledge=False`` never fires them at all; ``ack_delay`` holds
    each acknowledgement back for that many seconds after produce().
    """

    def __init__(
        self,
        delivery_error: Optional[KafkaError] = None,
        acknowledge: bool = True,
        ack_delay: float = 0.0,
    ):
        self.delivery_error = delivery_error
        self.acknowledge = acknowledge
        self.ack_delay = ack_delay
        self.produced: List[FakeMessage] = []
        self.delivered: List[FakeMessage] = []
        self._pending: List[Tuple[Callable, FakeMessage, float]] = []
        self._offsets = itertools.count()
        self.produce_error: Optional[Exception] = None

    def produce(
        self,
        topic: str,
        key: Optional[bytes] = None,
        value: Optional[bytes] = None,
        headers: Optional[List[Tuple[str, bytes]]] = None,
        on_delivery: Optional[Callable] = None,
    ) -> None:
        if self.produce_error is not None:
            raise self.produce_error
        message = FakeMessage(topic, value, key=key, headers=headers, offset=next(self._offsets))
        self.produced.append(message)
        if on_delivery is not None:
            self._pending.append((on_delivery, message, time.monotonic() + self.ack_delay))

    def poll(self, timeout: float = 0) -> int:
        if not self.acknowledge:
            return 0
        if self._pending:
            wait = self._pending[0][2] - time.monotonic()
            if wait > 0:
                time.sleep(min(wait, timeout))
        fired = 0
        while self._pending and self._pending[0][2] <= time.monotonic():
            callback, message, _ = self._pending.pop(0)
            callback(self.delivery_error, message)
            if self.delivery_error is None:
                self.delivered.append(message)
            fired += 1
        return fired

    def flush(self, timeout: float = 10.0) -> int:
        self.poll(timeout)
        return len(self._pending)

    def list_topics(self, timeout: float = 5.0) -> _Cluster:
        return _Cluster()


@pytest.fixture
def make_message() -> Callable[..., FakeMessage]:
    """Factory for fake Kafka messages."""
    return FakeMessage


@pytest.fixture
def fake_consumer() -> FakeConsumer:
    """Fake Kafka consumer."""
    return FakeConsumer()


@pytest.fixture
def make_consumer() -> Callable[[], FakeConsumer]:
    """Factory for additional fake consumers, one per consumer group."""
    return FakeConsumer


@pytest.fixture
def fake_producer() -> FakeProducer:
    """Fake Kafka producer that acknowledges every write."""
    return FakeProducer()


@pytest.fixture
def make_producer() -> Callable[..., FakeProducer]:
    """Factory for fake producers with custom failure modes."""
    return FakeProducer


@pytest.fixture
def publisher(fake_producer: FakeProducer) -> EventPublisher:
    """Event publisher over the fake producer."""
    return EventPublisher(PublisherConfig(delivery_timeout_seconds=1.0), producer=fake_producer)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        kafka_brokers="kafka-1:9092,kafka-2:9092",
        database_url="sqlite+aiosqlite:///:memory:",
        okteto_namespace="alice",
        okteto_diverted_environment="alice",
        app_name="booking-pipeline-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """SQLite engine with the schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory seeded with users and rooms."""
    factory = create_session_factory(db_engine)
    async with factory() as session:
        session.add_all(
            [
                User(id=1, email="alice@example.com", username="alice", name="Alice", surname="Liddell"),
                User(id=2, email="bob@example.com", username="bob", name="Bob", surname="Builder"),
                # Username that looks like another user's numeric id
                User(id=3, email="carol@example.com", username="1", name="Carol", surname="Danvers"),
                Room(id=10, internal_id="room-101", name="Garden View", floor=1, capacity=2),
                Room(id=11, internal_id="room-102", name="Sea View", floor=2, capacity=4),
            ]
        )
        await session.commit()
    return factory


@pytest.fixture
def writer(session_factory: async_sessionmaker[AsyncSession]) -> FulfillmentWriter:
    """Fulfillment writer over the seeded store."""
    return FulfillmentWriter(session_factory)


@pytest.fixture
def future_dates() -> Tuple[datetime, datetime]:
    """A valid stay starting tomorrow."""
    start = (datetime.now(timezone.utc) + timedelta(days=1)).replace(microsecond=0)
    return start, start + timedelta(days=3)


@pytest.fixture
def validation_client(mocker: Any) -> Any:
    """Directory client that approves everything."""
    client = mocker.AsyncMock()
    client.service_name = "booking-management"
    client.validate_booking.return_value = ValidationResult(is_valid=True, reasons=[])
    return client


@pytest.fixture
def payment_client(mocker: Any) -> Any:
    """Payment client that accepts every charge."""
    client = mocker.AsyncMock()
    client.service_name = "payments"
    client.process_payment.return_value = PaymentResult(success=True, message="ok")
    return client


@pytest.fixture
def orchestrator(validation_client: Any, payment_client: Any, publisher: EventPublisher) -> BookingOrchestrator:
    """Orchestrator over mocked collaborators and the fake producer."""
    return BookingOrchestrator(validation_client, payment_client, publisher)


@pytest_asyncio.fixture
async def client(orchestrator: BookingOrchestrator, publisher: EventPublisher) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app()
    app.state.orchestrator = orchestrator
    app.state.health_check = HealthCheck(publisher, [])
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def sample_booking_request(future_dates: Tuple[datetime, datetime]) -> Dict[str, Any]:
    """Sample booking request body."""
    start, end = future_dates
    return {
        "paymentId": "pay_123",
        "creditCardNumber": "4111111111111111",
        "roomId": "room-101",
        "userId": "alice@example.com",
        "guests": 2,
        "startDate": start.isoformat().replace("+00:00", "Z"),
        "endDate": end.isoformat().replace("+00:00", "Z"),
    }
