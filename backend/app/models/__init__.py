"""
SQLAlchemy models for PostgreSQL persistence.
"""

from app.models.engagement import (
    OPEN_EVENT_TYPES,
    CampaignAnalytics,
    EngagementEvent,
    EventType,
    UnsubscribeRecord,
)

__all__ = [
    "OPEN_EVENT_TYPES",
    "CampaignAnalytics",
    "EngagementEvent",
    "EventType",
    "UnsubscribeRecord",
]
