"""Durable deduplicated background jobs and policy-aware real-time events."""

__version__ = "0.1.0"
