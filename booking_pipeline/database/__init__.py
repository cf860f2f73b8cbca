"""Database package for the booking store."""
from .connection import close_db, create_session_factory, get_engine, get_session_factory, init_db
from .models import Base, Booking, BookingStatus, Room, User

__all__ = [
    "Base",
    "Booking",
    "BookingStatus",
    "Room",
    "User",
    "close_db",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
]
