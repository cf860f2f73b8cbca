"""Configuration package for the booking pipeline."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
