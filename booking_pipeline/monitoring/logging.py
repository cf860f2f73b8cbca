"""
JSON logging for the API and the fulfillment worker.

structlog renders every event as one JSON line on stdout. Baggage is bound
onto loggers by whoever handles a request or message; nothing reads it from
ambient state.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from booking_pipeline.config import get_settings

_QUIET_LIBRARIES = ("httpx", "httpcore", "confluent_kafka")


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp the app name, deployment env and divert tag onto an event."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    if settings.okteto_diverted_environment:
        event_dict["divert_environment"] = settings.okteto_diverted_environment
    return event_dict


def mask_card_number(card_number: Optional[str]) -> str:
    """Keep the last four digits of a card number, star out the rest."""
    if not card_number:
        return "not provided"
    digits = card_number.replace(" ", "")
    if len(digits) <= 4:
        return "*" * len(digits)
    return "*" * (len(digits) - 4) + digits[-4:]


def _stdlib_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging(service: Optional[str] = None) -> None:
    """
    Route structlog and stdlib logging to JSON on stdout.

    Called once at process start. Running it again replaces the root
    handlers, so tests and reloads do not double every line.

    Args:
        service: Process name ("booking-api", "fulfillment-worker") bound
            to every event through contextvars
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_app_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(settings.log_level)
    root.handlers = [_stdlib_handler()]

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    if service:
        structlog.contextvars.bind_contextvars(service=service)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
