"""Client for the payments service."""
from dataclasses import dataclass

import structlog

from booking_pipeline.integrations.base import ServiceClient, ServiceUnavailableError
from booking_pipeline.monitoring.logging import mask_card_number

logger = structlog.get_logger(__name__)

# Statuses on which the payments service answers with a {success: false} body
DECLINE_STATUSES = frozenset({400, 422})


@dataclass
class PaymentResult:
    """Outcome of a charge attempt."""
    success: bool
    message: str = ""


class PaymentClient(ServiceClient):
    """Calls ``POST {base}/process-payment``."""

    service_name = "payments"

    async def process_payment(
        self, payment_id: str, card_number: str, baggage: str = ""
    ) -> PaymentResult:
        """
        Charge a card.

        A decline comes back as a 400/422 JSON body with ``success: false``
        and is returned as an unsuccessful PaymentResult.

        Args:
            payment_id: Caller-supplied payment identifier
            card_number: Card to charge
            baggage: Propagated baggage

        Returns:
            PaymentResult

        Raises:
            ServiceUnavailableError: On transport failure or an unusable response
        """
        log = logger.bind(payment_id=payment_id, baggage=baggage or None)
        log.info("payment_requested", card_number_mask=mask_card_number(card_number))

        response = await self._post(
            "process-payment",
            {"paymentId": payment_id, "cardNumber": card_number},
            baggage=baggage,
        )

        if response.status_code == 200:
            body = self._json(response)
            result = PaymentResult(
                success=body.get("success") is True,
                message=str(body.get("message") or body.get("error") or ""),
            )
            log.info("payment_completed", success=result.success)
            return result

        if response.status_code in DECLINE_STATUSES:
            try:
                body = self._json(response)
            except ServiceUnavailableError:
                body = {}
            if body.get("success") is False:
                message = str(body.get("error") or body.get("message") or "payment declined")
                log.warning(
                    "payment_declined",
                    status_code=response.status_code,
                    reason=message,
                )
                return PaymentResult(success=False, message=message)

        log.error(
            "payment_error_status",
            status_code=response.status_code,
            body=response.text[:500],
        )
        raise ServiceUnavailableError(
            self.service_name,
            f"returned status {response.status_code}",
            response.status_code,
        )
