"""
Analytics API endpoints.

Provides stored campaign counters with derived rates, a manual refresh,
the raw event listing, an engagement timeline and per-recipient summaries.

Counters come from the campaign_analytics table (cached in Redis); the
listing, timeline and recipient views read engagement_events directly.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.postgres import get_db_session
from app.middleware.rate_limit import limiter
from app.models.engagement import EventType, OPEN_EVENT_TYPES
from app.schemas.engagement import (
    CampaignAnalyticsResponse,
    EngagementDataPoint,
    EngagementEventResponse,
    RecipientSummary,
)
from app.services.analytics_service import analytics_service
from app.services.event_store import EventFilter, EventStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["Analytics"])

TIMELINE_EVENT_TYPES = [
    *OPEN_EVENT_TYPES,
    EventType.CLICKED.value,
    EventType.BOUNCED.value,
    EventType.COMPLAINED.value,
]


@router.get("/campaigns/{campaign_id}", response_model=CampaignAnalyticsResponse)
async def get_campaign_analytics(campaign_id: str):
    """Get counters and rates for a campaign.

    A campaign that has never been aggregated is refreshed on first read,
    so unknown campaigns return a zero-valued row.
    """
    return await analytics_service.get_campaign_analytics(campaign_id)


@router.post("/campaigns/{campaign_id}/refresh", response_model=CampaignAnalyticsResponse)
@limiter.limit(settings.analytics_refresh_rate_limit)
async def refresh_campaign_analytics(request: Request, campaign_id: str):
    """Recompute a campaign's counters from its events right now."""
    row = await analytics_service.refresh(campaign_id)
    logger.info("Manual analytics refresh for campaign=%s", campaign_id)

    response = CampaignAnalyticsResponse.model_validate(row)
    response.rates = analytics_service.compute_rates(response)
    return response


@router.get("/campaigns/{campaign_id}/events", response_model=List[EngagementEventResponse])
async def list_campaign_events(
    campaign_id: str,
    event_type: Optional[List[EventType]] = Query(default=None, description="Filter by event type"),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_db_session),
):
    """List a campaign's raw engagement events, oldest first."""
    events = await EventStore(session).query(EventFilter(
        campaign_id=campaign_id,
        event_types=[t.value for t in event_type] if event_type else None,
        start=start,
        end=end,
        limit=limit,
    ))
    return events


@router.get("/campaigns/{campaign_id}/timeline", response_model=List[EngagementDataPoint])
async def get_engagement_timeline(
    campaign_id: str,
    granularity: str = Query(default="hour", pattern="^(hour|day)$"),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
):
    """Opens, clicks, bounces and complaints bucketed by hour or day."""
    events = await EventStore(session).query(EventFilter(
        campaign_id=campaign_id,
        event_types=TIMELINE_EVENT_TYPES,
        start=start,
        end=end,
    ))
    return analytics_service.build_timeline(events, granularity)


@router.get("/campaigns/{campaign_id}/recipients", response_model=List[RecipientSummary])
async def get_recipient_engagement(
    campaign_id: str,
    session: AsyncSession = Depends(get_db_session),
):
    """Per-recipient engagement for every send of the campaign."""
    events = await EventStore(session).query(EventFilter(campaign_id=campaign_id))
    return analytics_service.summarize_recipients(events)
