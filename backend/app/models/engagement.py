"""
Engagement tracking models: the append-only event ledger, the derived
per-campaign analytics row, and unsubscribe records.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint, Uuid, text

from app.db.postgres import Base


class EventType(str, Enum):
    """Engagement event types."""
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    REOPENED = "reopened"
    FORWARDED = "forwarded"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    UNSUBSCRIBED = "unsubscribed"


# Event types that count as an open in campaign analytics
OPEN_EVENT_TYPES = (EventType.OPENED.value, EventType.REOPENED.value, EventType.FORWARDED.value)


class EngagementEvent(Base):
    """One recorded interaction with a sent email. Never updated."""

    __tablename__ = "engagement_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    tracking_id = Column(String(64), nullable=True)
    campaign_id = Column(String(64), nullable=False)
    recipient_email = Column(String(255), nullable=True)
    contact_id = Column(String(64), nullable=True)

    event_type = Column(String(32), nullable=False)
    event_data = Column(JSON, nullable=True)

    # Request fingerprint (IP is stored hashed only)
    ip_hash = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_engagement_events_tracking_id_type", "tracking_id", "event_type"),
        Index("idx_engagement_events_campaign_id_type", "campaign_id", "event_type"),
        Index("idx_engagement_events_campaign_id_created_at", "campaign_id", "created_at"),
        # Exactly one sent event per tracking ID
        Index(
            "uq_engagement_events_sent_tracking_id",
            "tracking_id",
            unique=True,
            postgresql_where=text("event_type = 'sent'"),
            sqlite_where=text("event_type = 'sent'"),
        ),
    )


class CampaignAnalytics(Base):
    """Per-campaign counters derived from engagement_events."""

    __tablename__ = "campaign_analytics"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(String(64), unique=True, nullable=False)

    sent_count = Column(Integer, default=0, nullable=False)
    delivered_count = Column(Integer, default=0, nullable=False)
    opened_count = Column(Integer, default=0, nullable=False)
    unique_opened_count = Column(Integer, default=0, nullable=False)
    clicked_count = Column(Integer, default=0, nullable=False)
    unique_clicked_count = Column(Integer, default=0, nullable=False)
    bounced_count = Column(Integer, default=0, nullable=False)
    complained_count = Column(Integer, default=0, nullable=False)
    unsubscribed_count = Column(Integer, default=0, nullable=False)

    # Number of source events this row was computed from
    events_processed = Column(Integer, default=0, nullable=False)

    last_event_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class UnsubscribeRecord(Base):
    """Opt-out of one email address from one campaign."""

    __tablename__ = "unsubscribes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String(255), nullable=False, index=True)
    campaign_id = Column(String(64), nullable=False)
    contact_id = Column(String(64), nullable=True)

    method = Column(String(32), default="link")
    ip_hash = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    unsubscribed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("email", "campaign_id", name="uq_unsubscribes_email_campaign"),
    )
