"""Engagement events, campaign analytics and unsubscribe tables

Revision ID: 001_engagement_tracking
Revises:
Create Date: 2026-10-19

Note: These tables are also created by SQLAlchemy's Base.metadata.create_all()
in app startup. This migration exists for proper schema versioning and
production upgrade paths.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_engagement_tracking"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ----------------------------------------------------------------
    # Engagement events (append-only ledger)
    # ----------------------------------------------------------------
    op.create_table(
        "engagement_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tracking_id", sa.String(64), nullable=True),
        sa.Column("campaign_id", sa.String(64), nullable=False),
        sa.Column("recipient_email", sa.String(255), nullable=True),
        sa.Column("contact_id", sa.String(64), nullable=True),

        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("event_data", postgresql.JSON(), nullable=True),

        # Request fingerprint
        sa.Column("ip_hash", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),

        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_engagement_events_tracking_id_type", "engagement_events", ["tracking_id", "event_type"])
    op.create_index("idx_engagement_events_campaign_id_type", "engagement_events", ["campaign_id", "event_type"])
    op.create_index("idx_engagement_events_campaign_id_created_at", "engagement_events", ["campaign_id", "created_at"])
    # Exactly one sent event per tracking ID
    op.create_index(
        "uq_engagement_events_sent_tracking_id",
        "engagement_events",
        ["tracking_id"],
        unique=True,
        postgresql_where=sa.text("event_type = 'sent'"),
    )

    # ----------------------------------------------------------------
    # Campaign analytics (derived, one row per campaign)
    # ----------------------------------------------------------------
    op.create_table(
        "campaign_analytics",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("campaign_id", sa.String(64), nullable=False, unique=True),

        # Counters
        sa.Column("sent_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("delivered_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("opened_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("unique_opened_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("clicked_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("unique_clicked_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("bounced_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("complained_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("unsubscribed_count", sa.Integer(), server_default="0", nullable=False),

        # High-water mark guarding the conditional upsert
        sa.Column("events_processed", sa.Integer(), server_default="0", nullable=False),

        sa.Column("last_event_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )

    # ----------------------------------------------------------------
    # Unsubscribes
    # ----------------------------------------------------------------
    op.create_table(
        "unsubscribes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, index=True),
        sa.Column("campaign_id", sa.String(64), nullable=False),
        sa.Column("contact_id", sa.String(64), nullable=True),
        sa.Column("method", sa.String(32), server_default="link"),
        sa.Column("ip_hash", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("unsubscribed_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("email", "campaign_id", name="uq_unsubscribes_email_campaign"),
    )


def downgrade() -> None:
    op.drop_table("unsubscribes")
    op.drop_table("campaign_analytics")
    op.drop_index("uq_engagement_events_sent_tracking_id", table_name="engagement_events")
    op.drop_index("idx_engagement_events_campaign_id_created_at", table_name="engagement_events")
    op.drop_index("idx_engagement_events_campaign_id_type", table_name="engagement_events")
    op.drop_index("idx_engagement_events_tracking_id_type", table_name="engagement_events")
    op.drop_table("engagement_events")
