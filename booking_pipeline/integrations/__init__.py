"""HTTP clients for the services the booking API depends on."""
from .base import ServiceClient, ServiceUnavailableError
from .booking_management_client import BookingManagementClient, ValidationResult
from .payment_client import PaymentClient, PaymentResult

__all__ = [
    "BookingManagementClient",
    "PaymentClient",
    "PaymentResult",
    "ServiceClient",
    "ServiceUnavailableError",
    "ValidationResult",
]
