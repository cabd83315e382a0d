"""Visitor telemetry, rollups and engagement scores.

Revision ID: 20260101_01
Revises:
Create Date: 2026-01-01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20260101_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")
BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _aggregate_columns() -> list[sa.Column]:
    return [
        sa.Column("unique_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("new_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("returning_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("page_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("property_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("search_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bounce_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_session_duration", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_pages_per_session", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_scroll_depth", sa.Float(), nullable=False, server_default="0"),
        sa.Column("platform_breakdown", JSON_TYPE, nullable=False),
        sa.Column("device_breakdown", JSON_TYPE, nullable=False),
        sa.Column("country_breakdown", JSON_TYPE, nullable=False),
        sa.Column("referrer_breakdown", JSON_TYPE, nullable=False),
        sa.Column("top_cities", JSON_TYPE, nullable=False),
        sa.Column("top_pages", JSON_TYPE, nullable=False),
        sa.Column("top_properties", JSON_TYPE, nullable=False),
        sa.Column("top_searches", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "visitor_sessions",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("visitor_hash", sa.String(length=64), nullable=True),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("platform", sa.String(length=20), nullable=False, server_default="web_desktop"),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("country_code", sa.String(length=2), nullable=True),
        sa.Column("country_name", sa.String(length=100), nullable=True),
        sa.Column("region", sa.String(length=100), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("latitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("longitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("referrer_url", sa.Text(), nullable=True),
        sa.Column("referrer_domain", sa.String(length=255), nullable=True),
        sa.Column("utm_source", sa.String(length=100), nullable=True),
        sa.Column("utm_medium", sa.String(length=100), nullable=True),
        sa.Column("utm_campaign", sa.String(length=255), nullable=True),
        sa.Column("utm_term", sa.String(length=255), nullable=True),
        sa.Column("utm_content", sa.String(length=255), nullable=True),
        sa.Column("device_type", sa.String(length=20), nullable=True),
        sa.Column("browser", sa.String(length=50), nullable=True),
        sa.Column("browser_version", sa.String(length=20), nullable=True),
        sa.Column("os", sa.String(length=50), nullable=True),
        sa.Column("os_version", sa.String(length=20), nullable=True),
        sa.Column("screen_width", sa.SmallInteger(), nullable=True),
        sa.Column("screen_height", sa.SmallInteger(), nullable=True),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("page_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("property_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("searches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_bounce", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_bot", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_visitor_sessions_first_seen", "visitor_sessions", ["first_seen"])
    op.create_index("ix_visitor_sessions_last_seen", "visitor_sessions", ["last_seen"])
    op.create_index("ix_visitor_sessions_visitor_hash", "visitor_sessions", ["visitor_hash"])
    op.create_index("ix_visitor_sessions_user_id", "visitor_sessions", ["user_id"])

    op.create_table(
        "visitor_events",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("event_category", sa.String(length=50), nullable=True),
        sa.Column("platform", sa.String(length=20), nullable=False, server_default="web_desktop"),
        sa.Column("page_url", sa.Text(), nullable=True),
        sa.Column("page_path", sa.String(length=500), nullable=True),
        sa.Column("page_title", sa.String(length=255), nullable=True),
        sa.Column("page_type", sa.String(length=50), nullable=True),
        sa.Column("listing_id", sa.String(length=50), nullable=True),
        sa.Column("listing_key", sa.String(length=128), nullable=True),
        sa.Column("property_city", sa.String(length=100), nullable=True),
        sa.Column("property_price", sa.Integer(), nullable=True),
        sa.Column("property_beds", sa.SmallInteger(), nullable=True),
        sa.Column("property_baths", sa.Float(), nullable=True),
        sa.Column("search_query", sa.Text(), nullable=True),
        sa.Column("search_results_count", sa.Integer(), nullable=True),
        sa.Column("click_target", sa.String(length=255), nullable=True),
        sa.Column("click_element", sa.String(length=100), nullable=True),
        sa.Column("scroll_depth", sa.SmallInteger(), nullable=True),
        sa.Column("time_on_page", sa.Integer(), nullable=True),
        sa.Column("event_data", JSON_TYPE, nullable=True),
        sa.Column("event_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_visitor_events_session_id", "visitor_events", ["session_id"])
    op.create_index("ix_visitor_events_event_type", "visitor_events", ["event_type"])
    op.create_index("ix_visitor_events_created_at", "visitor_events", ["created_at"])
    op.create_index("ix_visitor_events_listing_id", "visitor_events", ["listing_id"])

    op.create_table(
        "presence_records",
        sa.Column("session_id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("platform", sa.String(length=20), nullable=False, server_default="web_desktop"),
        sa.Column("current_page", sa.Text(), nullable=True),
        sa.Column("current_page_type", sa.String(length=50), nullable=True),
        sa.Column("current_listing_id", sa.String(length=50), nullable=True),
        sa.Column("device_type", sa.String(length=20), nullable=True),
        sa.Column("country_code", sa.String(length=2), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_presence_records_last_heartbeat", "presence_records", ["last_heartbeat"])

    op.create_table(
        "analytics_hourly",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("hour_start", sa.DateTime(timezone=True), nullable=False),
        *_aggregate_columns(),
    )
    op.create_index("ix_analytics_hourly_hour_start", "analytics_hourly", ["hour_start"], unique=True)

    op.create_table(
        "analytics_daily",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("bucket_date", sa.Date(), nullable=False),
        sa.Column("bounce_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("sessions_change_pct", sa.Float(), nullable=True),
        sa.Column("pageviews_change_pct", sa.Float(), nullable=True),
        *_aggregate_columns(),
    )
    op.create_index("ix_analytics_daily_bucket_date", "analytics_daily", ["bucket_date"], unique=True)

    op.create_table(
        "engagement_scores",
        sa.Column("user_id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("agent_id", sa.BigInteger(), nullable=True),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("base_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("score_trend", sa.String(length=16), nullable=False, server_default="stable"),
        sa.Column("trend_change", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("days_since_activity", sa.Integer(), nullable=False, server_default="999"),
        sa.Column("time_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("view_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("search_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("intent_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("frequency_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("raw_data", JSON_TYPE, nullable=False),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_engagement_scores_agent_id", "engagement_scores", ["agent_id"])

    op.create_table(
        "agent_client_relationships",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("agent_id", sa.BigInteger(), nullable=False),
        sa.Column("client_id", sa.BigInteger(), nullable=False),
        sa.Column("relationship_status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("client_name", sa.String(length=255), nullable=True),
        sa.Column("client_email", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_agent_client_relationships_agent_id", "agent_client_relationships", ["agent_id"])
    op.create_index("ix_agent_client_relationships_client_id", "agent_client_relationships", ["client_id"])


def downgrade() -> None:
    op.drop_index("ix_agent_client_relationships_client_id", table_name="agent_client_relationships")
    op.drop_index("ix_agent_client_relationships_agent_id", table_name="agent_client_relationships")
    op.drop_table("agent_client_relationships")
    op.drop_index("ix_engagement_scores_agent_id", table_name="engagement_scores")
    op.drop_table("engagement_scores")
    op.drop_index("ix_analytics_daily_bucket_date", table_name="analytics_daily")
    op.drop_table("analytics_daily")
    op.drop_index("ix_analytics_hourly_hour_start", table_name="analytics_hourly")
    op.drop_table("analytics_hourly")
    op.drop_index("ix_presence_records_last_heartbeat", table_name="presence_records")
    op.drop_table("presence_records")
    op.drop_index("ix_visitor_events_listing_id", table_name="visitor_events")
    op.drop_index("ix_visitor_events_created_at", table_name="visitor_events")
    op.drop_index("ix_visitor_events_event_type", table_name="visitor_events")
    op.drop_index("ix_visitor_events_session_id", table_name="visitor_events")
    op.drop_table("visitor_events")
    op.drop_index("ix_visitor_sessions_user_id", table_name="visitor_sessions")
    op.drop_index("ix_visitor_sessions_visitor_hash", table_name="visitor_sessions")
    op.drop_index("ix_visitor_sessions_last_seen", table_name="visitor_sessions")
    op.drop_index("ix_visitor_sessions_first_seen", table_name="visitor_sessions")
    op.drop_table("visitor_sessions")
