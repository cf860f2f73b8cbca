"""
Pydantic schemas for API request/response models.

Wire names are camelCase. Request fields default to empty values so that
missing fields are reported by the orchestrator's own checks.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BookingRequest(BaseModel):
    """Request schema for POST /book."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "paymentId": "pay_123",
                    "creditCardNumber": "4111111111111111",
                    "roomId": "room-101",
                    "userId": "alice@example.com",
                    "guests": 2,
                    "startDate": "2030-06-01T14:00:00Z",
                    "endDate": "2030-06-04T11:00:00Z",
                }
            ]
        },
    )

    payment_id: str = Field(default="", alias="paymentId", description="Payment identifier")
    credit_card_number: str = Field(
        default="", alias="creditCardNumber", description="Card to charge"
    )
    room_id: str = Field(default="", alias="roomId", description="Room internal id")
    user_id: str = Field(
        default="", alias="userId", description="User email, username or numeric id"
    )
    guests: int = Field(default=0, description="Number of guests")
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")


class CancellationRequest(BaseModel):
    """Request schema for POST /cancel."""

    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(default="", alias="bookingId", description="Booking to cancel")
    user_id: str = Field(default="", alias="userId", description="Requesting user")


class BookingResponse(BaseModel):
    """Response schema for POST /book."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(..., description="Whether the booking was accepted")
    message: str = Field(..., description="Outcome message")
    booking_id: Optional[str] = Field(default=None, alias="bookingId")
    reasons: Optional[List[str]] = Field(
        default=None, description="Validation reasons when the booking was rejected"
    )


class CancellationResponse(BaseModel):
    """Response schema for POST /cancel."""

    success: bool = Field(..., description="Whether the cancellation was queued")
    message: str = Field(..., description="Outcome message")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
