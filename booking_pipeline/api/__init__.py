"""HTTP API for booking and cancellation."""
