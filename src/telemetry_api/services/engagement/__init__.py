"""Engagement scoring exports."""

from .debounce import EngagementRecomputeDebouncer  # noqa: F401
from .interest import PropertyInterestTracker, interest_score  # noqa: F401
from .scorer import (  # noqa: F401
    EngagementComponents,
    EngagementInputs,
    EngagementScorer,
    serialize_score,
)
from .timeline import ClientActivityTimeline, describe_activity  # noqa: F401
