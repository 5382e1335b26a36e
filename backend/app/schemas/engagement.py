"""
Pydantic schemas for engagement events, event metadata and campaign analytics.

``event_data`` is stored as JSON but built from one model per event type.
Every metadata model accepts unknown keys so older and newer writers can
share the ledger.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.engagement import EventType


# ============================================================================
# Event metadata
# ============================================================================


class ForwardDetection(BaseModel):
    """Result of the forwarded-open heuristic."""
    is_forwarded: bool = False
    confidence: int = Field(default=0, ge=0, le=100)
    indicators: list[str] = []


class EventData(BaseModel):
    """Base for per-event-type metadata."""
    model_config = ConfigDict(extra="allow")


class SentEventData(EventData):
    subject: Optional[str] = None
    message_id: Optional[str] = None


class OpenEventData(EventData):
    open_hint: str = "open"  # open | reopen, as requested by the pixel URL
    section: Optional[str] = None
    campaign_hint: Optional[str] = None
    contact_hint: Optional[str] = None
    forward_detection: Optional[ForwardDetection] = None


class ClickEventData(EventData):
    url: str


class DeliveryEventData(EventData):
    """Metadata for delivered / bounced / complained webhook events."""
    bounce_type: Optional[str] = None
    bounce_category: Optional[str] = None
    should_suppress: Optional[bool] = None
    smtp_code: Optional[str] = None
    description: Optional[str] = None


class UnsubscribeEventData(EventData):
    email: str
    method: str = "link"


# ============================================================================
# Event store I/O
# ============================================================================


class EngagementEventCreate(BaseModel):
    """An event to append to the ledger."""
    campaign_id: str
    event_type: EventType
    tracking_id: Optional[str] = None
    recipient_email: Optional[str] = None
    contact_id: Optional[str] = None
    event_data: Optional[EventData] = None
    ip_hash: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None  # defaults to now


class EngagementEventResponse(BaseModel):
    """An event as returned by the analytics API."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tracking_id: Optional[str] = None
    campaign_id: str
    recipient_email: Optional[str] = None
    contact_id: Optional[str] = None
    event_type: str
    event_data: Optional[dict[str, Any]] = None
    created_at: datetime


# ============================================================================
# Analytics
# ============================================================================


class CampaignAnalyticsResponse(BaseModel):
    """Stored counters plus derived rates for one campaign."""
    model_config = ConfigDict(from_attributes=True)

    campaign_id: str
    sent_count: int = 0
    delivered_count: int = 0
    opened_count: int = 0
    unique_opened_count: int = 0
    clicked_count: int = 0
    unique_clicked_count: int = 0
    bounced_count: int = 0
    complained_count: int = 0
    unsubscribed_count: int = 0
    events_processed: int = 0
    last_event_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    rates: dict[str, float] = {}


class EngagementDataPoint(BaseModel):
    """One bucket of the engagement timeline."""
    timestamp: datetime
    opens: int = 0
    clicks: int = 0
    bounces: int = 0
    complaints: int = 0


class LinkClickSummary(BaseModel):
    url: str
    clicks: int
    first_clicked: datetime
    last_clicked: datetime


class RecipientSummary(BaseModel):
    """Per-recipient engagement for one campaign send."""
    tracking_id: Optional[str] = None
    email: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    first_opened_at: Optional[datetime] = None
    last_opened_at: Optional[datetime] = None
    open_count: int = 0
    forwarded_count: int = 0
    first_clicked_at: Optional[datetime] = None
    last_clicked_at: Optional[datetime] = None
    click_count: int = 0
    bounced_at: Optional[datetime] = None
    bounce_type: Optional[str] = None
    unsubscribed_at: Optional[datetime] = None
    links_clicked: list[LinkClickSummary] = []


# ============================================================================
# Tracking API payloads
# ============================================================================


class SendRegistrationRequest(BaseModel):
    """Register an outgoing send and get its tracking URLs."""
    campaign_id: str = Field(..., min_length=1, max_length=64)
    recipient_email: EmailStr
    contact_id: Optional[str] = None
    subject: Optional[str] = None
    message_id: Optional[str] = None
    html_body: Optional[str] = None


class SendRegistrationResponse(BaseModel):
    tracking_id: str
    pixel_url: str
    click_base_url: str
    unsubscribe_url: str
    html_body: Optional[str] = None


class DeliveryWebhookPayload(BaseModel):
    """Delivery status notification from the mail server."""
    tracking_id: str
    event: str = Field(..., pattern="^(delivered|bounced|complained)$")
    smtp_code: str = ""
    smtp_response: str = ""
    bounce_type: str = ""
    diagnostic_message: str = ""
    occurred_at: Optional[datetime] = None
