"""
Booking and cancellation events and their JSON wire format.

Both events are keyed by booking id so that every event for one booking lands
on the same partition. Field names on the wire are camelCase and timestamps
are RFC 3339 strings in UTC.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

BOOKING_EVENTS_TOPIC = "booking-events"
BOOKING_CANCELLATIONS_TOPIC = "booking-cancellations"

# Message header carrying the propagated baggage string
BAGGAGE_HEADER = "baggage"

BOOKING_ID_PATTERN = re.compile(r"^booking_\d+_[A-Za-z0-9]{6}$")

_FRACTION = re.compile(r"\.(\d+)")


class EventDecodeError(ValueError):
    """Raised when a payload cannot be turned into an event."""

    pass


def format_timestamp(value: datetime) -> str:
    """
    Render a datetime as RFC 3339 in UTC.

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an RFC 3339 timestamp into an aware UTC datetime.

    Fractions longer than microseconds (as other runtimes emit) are truncated.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise EventDecodeError(f"Invalid timestamp: {value!r}") from e
    else:
        raise EventDecodeError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require(data: Dict[str, Any], field_name: str) -> Any:
    if field_name not in data or data[field_name] is None:
        raise EventDecodeError(f"Missing field: {field_name}")
    return data[field_name]


def _require_str(data: Dict[str, Any], field_name: str) -> str:
    value = _require(data, field_name)
    if not isinstance(value, str) or not value:
        raise EventDecodeError(f"Field {field_name} must be a non-empty string")
    return value


def _load_json(payload: bytes) -> Dict[str, Any]:
    if not payload:
        raise EventDecodeError("Empty payload")
    try:
        data = json.loads(payload.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise EventDecodeError(f"Payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise EventDecodeError("Payload must be a JSON object")
    return data


@dataclass(frozen=True)
class BookingEvent:
    """
    A paid reservation that still has to be written to the store.

    Attributes:
        user_id: External user identifier (email, username or numeric id)
        room_id: Room's stable internal id
        guests: Number of guests
        start_date: Start of the stay (UTC)
        end_date: End of the stay, strictly after start_date
        booking_id: Globally unique booking id, also the partition key
        payment_id: External payment identifier
    """

    user_id: str
    room_id: str
    guests: int
    start_date: datetime
    end_date: datetime
    booking_id: str
    payment_id: str

    def __post_init__(self):
        if isinstance(self.guests, bool) or not isinstance(self.guests, int) or self.guests <= 0:
            raise EventDecodeError(f"guests must be a positive integer, got {self.guests!r}")
        if self.end_date <= self.start_date:
            raise EventDecodeError("end_date must be after start_date")

    @property
    def key(self) -> str:
        """Partition key."""
        return self.booking_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "roomId": self.room_id,
            "guests": self.guests,
            "startDate": format_timestamp(self.start_date),
            "endDate": format_timestamp(self.end_date),
            "bookingId": self.booking_id,
            "paymentId": self.payment_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookingEvent":
        return cls(
            user_id=_require_str(data, "userId"),
            room_id=_require_str(data, "roomId"),
            guests=_require(data, "guests"),
            start_date=parse_timestamp(_require(data, "startDate")),
            end_date=parse_timestamp(_require(data, "endDate")),
            booking_id=_require_str(data, "bookingId"),
            # Older producers did not send a payment id
            payment_id=data.get("paymentId") or "",
        )

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, payload: bytes) -> "BookingEvent":
        return cls.from_dict(_load_json(payload))


@dataclass(frozen=True)
class CancellationEvent:
    """
    A request to cancel a booking.

    Attributes:
        booking_id: Booking to cancel, also the partition key
        user_id: External identifier of the requesting user
        timestamp: When the cancellation was requested (UTC)
    """

    booking_id: str
    user_id: str
    timestamp: datetime

    @property
    def key(self) -> str:
        """Partition key."""
        return self.booking_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookingId": self.booking_id,
            "userId": self.user_id,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CancellationEvent":
        return cls(
            booking_id=_require_str(data, "bookingId"),
            user_id=_require_str(data, "userId"),
            timestamp=parse_timestamp(_require(data, "timestamp")),
        )

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, payload: bytes) -> "CancellationEvent":
        return cls.from_dict(_load_json(payload))
