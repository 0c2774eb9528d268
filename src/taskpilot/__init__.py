"""Turn natural-language requests into durable, polled tasks."""

__version__ = "0.1.0"
