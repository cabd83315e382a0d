"""Client property interest rollup.

Revision ID: 20260301_01
Revises: 20260101_01
Create Date: 2026-03-01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260301_01"
down_revision: Union[str, None] = "20260101_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "client_property_interests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("listing_id", sa.String(length=50), nullable=False),
        sa.Column("property_city", sa.String(length=100), nullable=True),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_view_duration", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("photo_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("calculator_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("contact_clicked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("shared", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("favorited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("interest_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("first_viewed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_viewed_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "listing_id", name="uq_client_property_interests_user_listing"),
    )
    op.create_index(
        "ix_client_property_interests_user_score",
        "client_property_interests",
        ["user_id", "interest_score"],
    )

    op.create_table(
        "property_interest_runs",
        sa.Column("hour_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("pairs_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("property_interest_runs")
    op.drop_index("ix_client_property_interests_user_score", table_name="client_property_interests")
    op.drop_table("client_property_interests")
