"""Request handlers, routing and helpers for a Santa sensor sync server."""

__version__ = "0.1.0"