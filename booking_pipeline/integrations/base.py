"""Shared plumbing for the JSON-over-HTTP collaborator clients."""
import time
from typing import Any, Dict, Optional

import httpx
import structlog

from booking_pipeline.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ServiceUnavailableError(Exception):
    """Raised when a collaborator cannot be reached or answers unusably."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        """
        Initialize the error.

        Args:
            service: Collaborator name
            message: What went wrong
            status_code: HTTP status, when a response was received
        """
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class ServiceClient:
    """
    Base for collaborator clients.

    Wraps an httpx.AsyncClient, forwards baggage, and records per-call
    metrics. Subclasses set ``service_name``.
    """

    service_name = "service"

    def __init__(self, base_url: str, http_client: httpx.AsyncClient, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def _headers(baggage: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if baggage:
            headers["baggage"] = baggage
        return headers

    async def _post(self, path: str, payload: Dict[str, Any], baggage: str = "") -> httpx.Response:
        """
        POST a JSON body and return the raw response.

        Raises:
            ServiceUnavailableError: On connection errors and timeouts
        """
        start_time = time.time()
        try:
            response = await self.http_client.post(
                self._url(path),
                json=payload,
                headers=self._headers(baggage),
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            metrics.record_collaborator_call(
                self.service_name, "error", time.time() - start_time
            )
            logger.error(
                "collaborator_request_failed",
                service=self.service_name,
                path=path,
                error=str(e),
                error_type=type(e).__name__,
                baggage=baggage or None,
            )
            raise ServiceUnavailableError(self.service_name, f"request failed: {e}") from e

        metrics.record_collaborator_call(
            self.service_name, str(response.status_code), time.time() - start_time
        )
        return response

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise ServiceUnavailableError(
                self.service_name, "response is not valid JSON", response.status_code
            ) from e
        if not isinstance(body, dict):
            raise ServiceUnavailableError(
                self.service_name, "response is not a JSON object", response.status_code
            )
        return body

    async def check_health(self) -> Dict[str, Any]:
        """
        GET /health on the collaborator.

        Raises:
            ServiceUnavailableError: If the collaborator is unreachable or unhealthy
        """
        try:
            response = await self.http_client.get(self._url("health"), timeout=5.0)
        except httpx.HTTPError as e:
            raise ServiceUnavailableError(self.service_name, f"health check failed: {e}") from e
        if response.status_code != 200:
            raise ServiceUnavailableError(
                self.service_name,
                f"health check returned status {response.status_code}",
                response.status_code,
            )
        return {"status": "healthy", "service": self.service_name}
