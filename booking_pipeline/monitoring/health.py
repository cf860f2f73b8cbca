"""
Health checks for the booking API.

Checks:
- Kafka reachability (cluster metadata)
- Directory service /health
- Payments service /health
"""
import asyncio
from typing import Any, Dict, List, Optional

import structlog
from confluent_kafka import KafkaException

from booking_pipeline.integrations.base import ServiceClient, ServiceUnavailableError

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the API's dependencies.

    Args:
        publisher: Event publisher whose broker connection is checked
        services: Collaborator clients to probe
    """

    def __init__(self, publisher: Optional[Any] = None, services: Optional[List[ServiceClient]] = None):
        self.publisher = publisher
        self.services = services or []

    async def check_kafka(self) -> Dict[str, Any]:
        """
        Check broker connectivity.

        Raises:
            HealthCheckError: If metadata cannot be fetched
        """
        if self.publisher is None:
            raise HealthCheckError("Kafka health check failed: publisher not started")
        try:
            cluster = await asyncio.to_thread(self.publisher.check_connection, 5.0)
        except KafkaException as e:
            logger.error("kafka_health_check_failed", error=str(e))
            raise HealthCheckError(f"Kafka health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "kafka",
            "message": "Kafka connection successful",
            **cluster,
        }

    async def check_service(self, client: ServiceClient) -> Dict[str, Any]:
        """
        Probe one collaborator.

        Raises:
            HealthCheckError: If the collaborator is unreachable or unhealthy
        """
        try:
            return await client.check_health()
        except ServiceUnavailableError as e:
            logger.error("service_health_check_failed", service=client.service_name, error=str(e))
            raise HealthCheckError(str(e)) from e

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["kafka"] = await self.check_kafka()
        except HealthCheckError as e:
            checks["kafka"] = {"status": "unhealthy", "service": "kafka", "error": str(e)}
            all_healthy = False

        for client in self.services:
            try:
                checks[client.service_name] = await self.check_service(client)
            except HealthCheckError as e:
                checks[client.service_name] = {
                    "status": "unhealthy",
                    "service": client.service_name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Application is running; dependencies are not checked."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Ready when every dependency is reachable."""
        return await self.check_all()
