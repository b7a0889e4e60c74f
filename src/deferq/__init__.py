"""Durable SQLite-backed deferred task queue."""

__version__ = "0.1.0"
