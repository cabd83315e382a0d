"""Errors raised by the ingestion path."""

from __future__ import annotations


class TelemetryError(Exception):
    """Base class for telemetry ingestion failures."""


class MalformedTelemetryError(TelemetryError):
    """The request is missing a session id or carries no events."""


class RateLimitedError(TelemetryError):
    """The session exceeded its request budget for the current window."""

    def __init__(self, retry_after_seconds: int, message: str = "Rate limit exceeded") -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


__all__ = ["MalformedTelemetryError", "RateLimitedError", "TelemetryError"]
