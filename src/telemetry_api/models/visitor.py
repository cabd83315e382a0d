"""Raw visitor telemetry: sessions, events and live presence."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
)

from telemetry_api.db.base import Base, JSONType


class PlatformEnum(str, Enum):
    WEB_DESKTOP = "web_desktop"
    WEB_MOBILE = "web_mobile"
    WEB_TABLET = "web_tablet"
    IOS_APP = "ios_app"


WEB_PLATFORMS = (
    PlatformEnum.WEB_DESKTOP.value,
    PlatformEnum.WEB_MOBILE.value,
    PlatformEnum.WEB_TABLET.value,
)


class VisitorSession(Base):
    """One row per client-generated session id, merge-updated on every event."""

    __tablename__ = "visitor_sessions"
    __table_args__ = (
        Index("ix_visitor_sessions_first_seen", "first_seen"),
        Index("ix_visitor_sessions_last_seen", "last_seen"),
        Index("ix_visitor_sessions_visitor_hash", "visitor_hash"),
        Index("ix_visitor_sessions_user_id", "user_id"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False, unique=True)
    visitor_hash = Column(String(64), nullable=True)
    user_id = Column(BigInteger, nullable=True)
    platform = Column(String(20), nullable=False, default=PlatformEnum.WEB_DESKTOP.value)

    ip_address = Column(String(45), nullable=True)
    country_code = Column(String(2), nullable=True)
    country_name = Column(String(100), nullable=True)
    region = Column(String(100), nullable=True)
    city = Column(String(100), nullable=True)
    latitude = Column(Numeric(10, 7), nullable=True)
    longitude = Column(Numeric(10, 7), nullable=True)

    referrer_url = Column(Text, nullable=True)
    referrer_domain = Column(String(255), nullable=True)
    utm_source = Column(String(100), nullable=True)
    utm_medium = Column(String(100), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    utm_term = Column(String(255), nullable=True)
    utm_content = Column(String(255), nullable=True)

    device_type = Column(String(20), nullable=True)
    browser = Column(String(50), nullable=True)
    browser_version = Column(String(20), nullable=True)
    os = Column(String(50), nullable=True)
    os_version = Column(String(20), nullable=True)
    screen_width = Column(SmallInteger, nullable=True)
    screen_height = Column(SmallInteger, nullable=True)

    first_seen = Column(DateTime(timezone=True), nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False)
    page_views = Column(Integer, nullable=False, default=0)
    property_views = Column(Integer, nullable=False, default=0)
    searches = Column(Integer, nullable=False, default=0)
    is_bounce = Column(Boolean, nullable=False, default=True)
    is_bot = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class VisitorEvent(Base):
    """Immutable record of a single tracked action."""

    __tablename__ = "visitor_events"
    __table_args__ = (
        Index("ix_visitor_events_session_id", "session_id"),
        Index("ix_visitor_events_event_type", "event_type"),
        Index("ix_visitor_events_created_at", "created_at"),
        Index("ix_visitor_events_listing_id", "listing_id"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    # No foreign key: events may arrive before their session under at-least-once delivery.
    session_id = Column(String(64), nullable=False)
    event_type = Column(String(50), nullable=False)
    event_category = Column(String(50), nullable=True)
    platform = Column(String(20), nullable=False, default=PlatformEnum.WEB_DESKTOP.value)

    page_url = Column(Text, nullable=True)
    page_path = Column(String(500), nullable=True)
    page_title = Column(String(255), nullable=True)
    page_type = Column(String(50), nullable=True)

    listing_id = Column(String(50), nullable=True)
    listing_key = Column(String(128), nullable=True)
    property_city = Column(String(100), nullable=True)
    property_price = Column(Integer, nullable=True)
    property_beds = Column(SmallInteger, nullable=True)
    property_baths = Column(Float, nullable=True)

    search_query = Column(Text, nullable=True)
    search_results_count = Column(Integer, nullable=True)
    click_target = Column(String(255), nullable=True)
    click_element = Column(String(100), nullable=True)
    scroll_depth = Column(SmallInteger, nullable=True)
    time_on_page = Column(Integer, nullable=True)

    event_data = Column(JSONType, nullable=True)
    event_timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class PresenceRecord(Base):
    """Volatile 'active now' row, replaced on every heartbeat."""

    __tablename__ = "presence_records"
    __table_args__ = (Index("ix_presence_records_last_heartbeat", "last_heartbeat"),)

    session_id = Column(String(64), primary_key=True)
    user_id = Column(BigInteger, nullable=True)
    platform = Column(String(20), nullable=False, default=PlatformEnum.WEB_DESKTOP.value)
    current_page = Column(Text, nullable=True)
    current_page_type = Column(String(50), nullable=True)
    current_listing_id = Column(String(50), nullable=True)
    device_type = Column(String(20), nullable=True)
    country_code = Column(String(2), nullable=True)
    city = Column(String(100), nullable=True)
    last_heartbeat = Column(DateTime(timezone=True), nullable=False)


__all__ = ["PlatformEnum", "PresenceRecord", "VisitorEvent", "VisitorSession", "WEB_PLATFORMS"]
