"""Telemetry ingestion: sanitization, rate limiting and raw storage."""

from .errors import MalformedTelemetryError, RateLimitedError, TelemetryError
from .event_store import ActivityFilters, EventStore, PresenceUpdate, SessionUpsert
from .ingestion import HeartbeatResult, IngestionService, RequestContext, TrackResult
from .rate_limit import RateLimitDecision, SessionRateLimiter

__all__ = [
    "ActivityFilters",
    "EventStore",
    "HeartbeatResult",
    "IngestionService",
    "MalformedTelemetryError",
    "PresenceUpdate",
    "RateLimitDecision",
    "RateLimitedError",
    "RequestContext",
    "SessionRateLimiter",
    "SessionUpsert",
    "TelemetryError",
    "TrackResult",
]
