"""Hourly and daily rollups of visitor telemetry."""

from __future__ import annotations

from sqlalchemy import Column, Date, DateTime, Float, Index, Integer, func

from telemetry_api.db.base import Base, JSONType


class _AggregateColumns:
    unique_sessions = Column(Integer, nullable=False, default=0)
    new_sessions = Column(Integer, nullable=False, default=0)
    returning_sessions = Column(Integer, nullable=False, default=0)
    page_views = Column(Integer, nullable=False, default=0)
    property_views = Column(Integer, nullable=False, default=0)
    search_count = Column(Integer, nullable=False, default=0)
    bounce_sessions = Column(Integer, nullable=False, default=0)
    avg_session_duration = Column(Integer, nullable=False, default=0)
    avg_pages_per_session = Column(Float, nullable=False, default=0.0)
    avg_scroll_depth = Column(Float, nullable=False, default=0.0)

    platform_breakdown = Column(JSONType, nullable=False, default=dict)
    device_breakdown = Column(JSONType, nullable=False, default=dict)
    country_breakdown = Column(JSONType, nullable=False, default=dict)
    referrer_breakdown = Column(JSONType, nullable=False, default=dict)
    top_cities = Column(JSONType, nullable=False, default=list)
    top_pages = Column(JSONType, nullable=False, default=list)
    top_properties = Column(JSONType, nullable=False, default=list)
    top_searches = Column(JSONType, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class HourlyAggregate(_AggregateColumns, Base):
    """One row per completed hour; never recomputed once written."""

    __tablename__ = "analytics_hourly"
    __table_args__ = (Index("ix_analytics_hourly_hour_start", "hour_start", unique=True),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    hour_start = Column(DateTime(timezone=True), nullable=False)


class DailyAggregate(_AggregateColumns, Base):
    """One row per calendar day (UTC), derived from hourly rows plus raw top-N."""

    __tablename__ = "analytics_daily"
    __table_args__ = (Index("ix_analytics_daily_bucket_date", "bucket_date", unique=True),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    bucket_date = Column(Date(), nullable=False)
    bounce_rate = Column(Float, nullable=False, default=0.0)
    sessions_change_pct = Column(Float, nullable=True)
    pageviews_change_pct = Column(Float, nullable=True)


__all__ = ["DailyAggregate", "HourlyAggregate"]
