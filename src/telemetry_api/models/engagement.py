"""Engagement scores and the agent/client relationships that gate them."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Float, Index, Integer, String, UniqueConstraint, func

from telemetry_api.db.base import Base, JSONType


class ScoreTrendEnum(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class RelationshipStatusEnum(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class EngagementScore(Base):
    """Latest engagement score per client; replaced wholesale on recompute."""

    __tablename__ = "engagement_scores"
    __table_args__ = (Index("ix_engagement_scores_agent_id", "agent_id"),)

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    agent_id = Column(BigInteger, nullable=True)
    score = Column(Float, nullable=False, default=0.0)
    base_score = Column(Float, nullable=False, default=0.0)
    score_trend = Column(String(16), nullable=False, default=ScoreTrendEnum.STABLE.value)
    trend_change = Column(Float, nullable=False, default=0.0)
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    days_since_activity = Column(Integer, nullable=False, default=999)
    time_score = Column(Float, nullable=False, default=0.0)
    view_score = Column(Float, nullable=False, default=0.0)
    search_score = Column(Float, nullable=False, default=0.0)
    intent_score = Column(Float, nullable=False, default=0.0)
    frequency_score = Column(Float, nullable=False, default=0.0)
    raw_data = Column(JSONType, nullable=False, default=dict)
    calculated_at = Column(DateTime(timezone=True), nullable=False)


class AgentClientRelationship(Base):
    """Links a client user to the agent responsible for them."""

    __tablename__ = "agent_client_relationships"
    __table_args__ = (
        Index("ix_agent_client_relationships_agent_id", "agent_id"),
        Index("ix_agent_client_relationships_client_id", "client_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(BigInteger, nullable=False)
    client_id = Column(BigInteger, nullable=False)
    relationship_status = Column(String(16), nullable=False, default=RelationshipStatusEnum.ACTIVE.value)
    client_name = Column(String(255), nullable=True)
    client_email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PropertyInterest(Base):
    """Running interest of one client in one listing, fed by the hourly rollup."""

    __tablename__ = "client_property_interests"
    __table_args__ = (
        UniqueConstraint("user_id", "listing_id", name="uq_client_property_interests_user_listing"),
        Index("ix_client_property_interests_user_score", "user_id", "interest_score"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    listing_id = Column(String(50), nullable=False)
    property_city = Column(String(100), nullable=True)
    view_count = Column(Integer, nullable=False, default=0)
    total_view_duration = Column(Integer, nullable=False, default=0)
    photo_views = Column(Integer, nullable=False, default=0)
    calculator_used = Column(Boolean, nullable=False, default=False)
    contact_clicked = Column(Boolean, nullable=False, default=False)
    shared = Column(Boolean, nullable=False, default=False)
    favorited = Column(Boolean, nullable=False, default=False)
    interest_score = Column(Float, nullable=False, default=0.0)
    first_viewed_at = Column(DateTime(timezone=True), nullable=False)
    last_viewed_at = Column(DateTime(timezone=True), nullable=False)


class PropertyInterestRun(Base):
    """One row per hour folded into ``client_property_interests``."""

    __tablename__ = "property_interest_runs"

    hour_start = Column(DateTime(timezone=True), primary_key=True)
    pairs_updated = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = [
    "AgentClientRelationship",
    "EngagementScore",
    "PropertyInterest",
    "PropertyInterestRun",
    "RelationshipStatusEnum",
    "ScoreTrendEnum",
]
