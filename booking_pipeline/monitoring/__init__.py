"""Monitoring and observability package."""
from .logging import mask_card_number, setup_logging
from .metrics import metrics

__all__ = ["mask_card_number", "metrics", "setup_logging"]
