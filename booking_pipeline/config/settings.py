"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Kafka Configuration
    kafka_brokers: str = Field(
        default="localhost:9092", description="Kafka broker addresses (comma-separated)"
    )
    booking_events_topic: str = Field(default="booking-events", description="Booking events topic")
    booking_cancellations_topic: str = Field(
        default="booking-cancellations", description="Booking cancellations topic"
    )
    publish_timeout_seconds: float = Field(
        default=30.0, description="Broker-side delivery timeout for published events (message.timeout.ms)"
    )

    # Consumer Configuration
    consumer_group_prefix: str = Field(default="worker-group", description="Consumer group prefix")
    consumer_poll_timeout_seconds: float = Field(default=1.0, description="Poll timeout (seconds)")
    consumer_session_timeout_ms: int = Field(default=10000, description="Group session timeout")
    consumer_retry_backoff_seconds: float = Field(
        default=1.0, description="Initial backoff before a failed message is redelivered"
    )
    consumer_max_retry_backoff_seconds: float = Field(
        default=30.0, description="Upper bound for the redelivery backoff"
    )
    consumer_commit_skipped: bool = Field(
        default=False, description="Commit offsets of messages diverted to other environments"
    )
    dead_letter_topic: Optional[str] = Field(
        default=None, description="Dead-letter topic (disabled when unset)"
    )
    max_delivery_attempts: Optional[int] = Field(
        default=None, description="Attempts before a message is dead-lettered"
    )

    # Environment divert (Okteto)
    okteto_diverted_environment: str = Field(
        default="", description="Divert tag this worker instance is responsible for"
    )
    okteto_namespace: str = Field(default="", description="Namespace used to isolate the group")

    # Database Configuration
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy async database URL")
    db_host: str = Field(default="localhost", description="Database host")
    db_port: int = Field(default=5432, description="Database port")
    db_user: str = Field(default="postgres", description="Database user")
    db_pass: str = Field(default="postgres", description="Database password")
    db_name: str = Field(default="booking_management", description="Database name")
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    database_auto_create: bool = Field(
        default=False, description="Create missing tables on worker start (development only)"
    )

    # Collaborator services
    payment_service_url: str = Field(
        default="http://payments:3000", description="Payment service base URL"
    )
    booking_management_service_url: str = Field(
        default="http://booking-management:8080", description="Directory service base URL"
    )
    collaborator_timeout_seconds: float = Field(
        default=30.0, description="Timeout for validation and payment calls"
    )

    # Application Configuration
    app_name: str = Field(default="booking-pipeline", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8081, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")

    # Worker Configuration
    worker_metrics_port: Optional[int] = Field(
        default=None, description="Port for the worker's Prometheus endpoint"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("kafka_brokers")
    @classmethod
    def validate_kafka_brokers(cls, v: str) -> str:
        """Normalise the broker list and reject an empty one."""
        brokers = [broker.strip() for broker in v.split(",") if broker.strip()]
        if not brokers:
            raise ValueError("At least one Kafka broker is required")
        return ",".join(brokers)

    @field_validator("max_delivery_attempts")
    @classmethod
    def validate_max_delivery_attempts(cls, v: Optional[int]) -> Optional[int]:
        """Attempts must be positive when set."""
        if v is not None and v < 1:
            raise ValueError("max_delivery_attempts must be at least 1")
        return v

    def get_kafka_brokers_list(self) -> List[str]:
        """Parse Kafka brokers from comma-separated string."""
        return [broker.strip() for broker in self.kafka_brokers.split(",")]

    def get_database_url(self) -> str:
        """Explicit URL wins, otherwise build one from the DB_* parts."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_pass}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @property
    def consumer_group_id(self) -> str:
        """Group id scoped to the namespace so environments never share a group."""
        if self.okteto_namespace:
            return f"{self.consumer_group_prefix}-{self.okteto_namespace}"
        return self.consumer_group_prefix


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
