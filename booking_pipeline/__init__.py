"""Room booking fulfillment pipeline: booking API, event publisher and fulfillment worker."""

__version__ = "1.0.0"
