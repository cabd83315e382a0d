"""SQLAlchemy models package."""

from .aggregates import DailyAggregate, HourlyAggregate  # noqa: F401
from .engagement import (  # noqa: F401
    AgentClientRelationship,
    EngagementScore,
    PropertyInterest,
    PropertyInterestRun,
    RelationshipStatusEnum,
    ScoreTrendEnum,
)
from .visitor import (  # noqa: F401
    WEB_PLATFORMS,
    PlatformEnum,
    PresenceRecord,
    VisitorEvent,
    VisitorSession,
)

__all__ = [
    "AgentClientRelationship",
    "DailyAggregate",
    "EngagementScore",
    "HourlyAggregate",
    "PlatformEnum",
    "PresenceRecord",
    "PropertyInterest",
    "PropertyInterestRun",
    "RelationshipStatusEnum",
    "ScoreTrendEnum",
    "VisitorEvent",
    "VisitorSession",
    "WEB_PLATFORMS",
]
