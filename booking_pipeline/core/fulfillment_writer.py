"""
Fulfillment writer: persists booking events into the booking store.

The writer is the sink behind the fulfillment consumer. Any exception it
raises makes the consumer leave the offset uncommitted and redeliver the
event later, so "not found yet" conditions are raised rather than swallowed.
"""
import re
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_pipeline.database.models import Booking, BookingStatus, Room, User
from booking_pipeline.streaming.events import BookingEvent, CancellationEvent

logger = structlog.get_logger(__name__)

_NUMERIC_ID = re.compile(r"[0-9]+")


class FulfillmentError(Exception):
    """Base exception for fulfillment failures."""

    pass


class UserNotFoundError(FulfillmentError):
    """Raised when no user matches the event's user identifier."""

    def __init__(self, identifier: str):
        super().__init__(f"User not found with identifier: {identifier}")
        self.identifier = identifier


class RoomNotFoundError(FulfillmentError):
    """Raised when no room has the event's internal id."""

    def __init__(self, internal_id: str):
        super().__init__(f"Room not found with internal ID: {internal_id}")
        self.internal_id = internal_id


class BookingNotFoundError(FulfillmentError):
    """Raised when a cancellation names a booking that is not stored (yet)."""

    def __init__(self, booking_id: str):
        super().__init__(f"Booking not found: {booking_id}")
        self.booking_id = booking_id


class FulfillmentWriter:
    """
    Writes bookings and cancellations to the store.

    Implements both BookingSink and CancellationSink. Each call runs in its
    own session and transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize the writer.

        Args:
            session_factory: Factory for database sessions
        """
        self.session_factory = session_factory

    async def create_booking(self, event: BookingEvent, baggage: str = "") -> None:
        """
        Persist a BookingEvent as an Accepted booking.

        A booking id that is already stored is acknowledged without a second
        insert, so redeliveries are harmless.

        Raises:
            UserNotFoundError: If the user identifier resolves to nobody
            RoomNotFoundError: If the room internal id is unknown
            FulfillmentError: If the store rejects the write
        """
        log = logger.bind(
            booking_id=event.booking_id,
            user_id=event.user_id,
            room_id=event.room_id,
            baggage=baggage or None,
        )

        try:
            async with self.session_factory() as session:
                existing = await self._find_booking_id(session, event.booking_id)
                if existing is not None:
                    log.info("booking_already_fulfilled", db_booking_id=existing)
                    return

                user_pk = await self._resolve_user(session, event.user_id)
                room_pk = await self._resolve_room(session, event.room_id)

                now = datetime.now(timezone.utc)
                booking = Booking(
                    booking_reference=event.booking_id,
                    user_id=user_pk,
                    room_id=room_pk,
                    number_of_guests=event.guests,
                    start_date=event.start_date,
                    end_date=event.end_date,
                    payment_id=event.payment_id or None,
                    status=BookingStatus.ACCEPTED.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(booking)

                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    # Lost a race against another delivery of the same event
                    existing = await self._find_booking_id(session, event.booking_id)
                    if existing is not None:
                        log.info("booking_already_fulfilled", db_booking_id=existing)
                        return
                    raise FulfillmentError(f"Failed to insert booking: {e.orig}") from e

                log.info(
                    "booking_fulfilled",
                    db_booking_id=booking.id,
                    guests=event.guests,
                    start_date=event.start_date.isoformat(),
                    end_date=event.end_date.isoformat(),
                )

        except FulfillmentError as e:
            log.warning("booking_fulfillment_failed", error=str(e))
            raise
        except SQLAlchemyError as e:
            log.error("booking_store_error", error=str(e))
            raise FulfillmentError(f"Booking store error: {e}") from e

    async def cancel_booking(self, event: CancellationEvent, baggage: str = "") -> None:
        """
        Mark a booking as Cancelled.

        Cancelling an already cancelled booking is a no-op.

        Raises:
            BookingNotFoundError: If the booking is not stored yet
            FulfillmentError: If the store rejects the write
        """
        log = logger.bind(
            booking_id=event.booking_id,
            user_id=event.user_id,
            baggage=baggage or None,
        )

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Booking)
                    .where(
                        Booking.booking_reference == event.booking_id,
                        Booking.status != BookingStatus.CANCELLED.value,
                    )
                    .values(
                        status=BookingStatus.CANCELLED.value,
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

                if result.rowcount:
                    log.info("booking_cancelled")
                    return

                status = await session.scalar(
                    select(Booking.status).where(Booking.booking_reference == event.booking_id)
                )
                if status is None:
                    raise BookingNotFoundError(event.booking_id)

                log.info("booking_already_cancelled")

        except FulfillmentError as e:
            log.warning("booking_cancellation_failed", error=str(e))
            raise
        except SQLAlchemyError as e:
            log.error("booking_store_error", error=str(e))
            raise FulfillmentError(f"Booking store error: {e}") from e

    @staticmethod
    async def _find_booking_id(session: AsyncSession, booking_reference: str) -> int | None:
        return await session.scalar(
            select(Booking.id).where(Booking.booking_reference == booking_reference)
        )

    @staticmethod
    async def _resolve_user(session: AsyncSession, identifier: str) -> int:
        """Resolve email first, then username, then numeric primary key."""
        user_pk = await session.scalar(select(User.id).where(User.email == identifier))
        if user_pk is None:
            user_pk = await session.scalar(select(User.id).where(User.username == identifier))
        if user_pk is None and _NUMERIC_ID.fullmatch(identifier):
            user_pk = await session.scalar(select(User.id).where(User.id == int(identifier)))
        if user_pk is None:
            raise UserNotFoundError(identifier)
        return user_pk

    @staticmethod
    async def _resolve_room(session: AsyncSession, internal_id: str) -> int:
        room_pk = await session.scalar(select(Room.id).where(Room.internal_id == internal_id))
        if room_pk is None:
            raise RoomNotFoundError(internal_id)
        return room_pk
