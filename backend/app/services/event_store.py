"""
Append-only ledger of engagement events.

Duplicate deliveries (pixel prefetches, client retries) are stored as-is;
unique counting happens at aggregation time. The one exception is the
``sent`` event, of which each tracking ID has exactly one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import DuplicateSendError
from app.models.engagement import CampaignAnalytics, EngagementEvent, EventType, UnsubscribeRecord
from app.schemas.engagement import EngagementEventCreate

logger = logging.getLogger(__name__)


@dataclass
class EventFilter:
    """Query filters; unset fields are not constrained."""
    tracking_id: Optional[str] = None
    campaign_id: Optional[str] = None
    event_types: Optional[Sequence[str]] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = None


class EventStore:
    """Event ledger bound to one database session.

    The caller owns the transaction: nothing here commits.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, event: EngagementEventCreate) -> UUID:
        """Append an event and return its ID.

        Raises:
            DuplicateSendError: a ``sent`` event already exists for the tracking ID.
        """
        row = EngagementEvent(
            id=uuid4(),
            tracking_id=event.tracking_id,
            campaign_id=event.campaign_id,
            recipient_email=event.recipient_email,
            contact_id=event.contact_id,
            event_type=event.event_type.value,
            event_data=(
                event.event_data.model_dump(mode="json", exclude_none=True)
                if event.event_data is not None else None
            ),
            ip_hash=event.ip_hash,
            user_agent=event.user_agent,
            created_at=event.created_at or datetime.utcnow(),
        )

        if event.event_type == EventType.SENT and event.tracking_id:
            if await self.find_sent_event(event.tracking_id) is not None:
                raise DuplicateSendError(event.tracking_id)

        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError:
            # Lost a race with a concurrent send for the same tracking ID;
            # the session must be rolled back by the caller.
            logger.warning("Duplicate sent event for tracking_id=%s", event.tracking_id)
            raise DuplicateSendError(event.tracking_id or "")
        return row.id

    async def find_sent_event(self, tracking_id: str) -> Optional[EngagementEvent]:
        """Look up the originating send for a tracking ID (indexed)."""
        result = await self.session.execute(
            select(EngagementEvent)
            .where(EngagementEvent.tracking_id == tracking_id)
            .where(EngagementEvent.event_type == EventType.SENT.value)
        )
        return result.scalar_one_or_none()

    async def query(self, filters: EventFilter) -> list[EngagementEvent]:
        """Return events matching ``filters`` ordered by event time."""
        stmt = select(EngagementEvent)
        if filters.tracking_id is not None:
            stmt = stmt.where(EngagementEvent.tracking_id == filters.tracking_id)
        if filters.campaign_id is not None:
            stmt = stmt.where(EngagementEvent.campaign_id == filters.campaign_id)
        if filters.event_types:
            stmt = stmt.where(EngagementEvent.event_type.in_(list(filters.event_types)))
        if filters.start is not None:
            stmt = stmt.where(EngagementEvent.created_at >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(EngagementEvent.created_at <= filters.end)

        stmt = stmt.order_by(EngagementEvent.created_at, EngagementEvent.id)
        if filters.limit is not None:
            stmt = stmt.limit(filters.limit)

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def purge_campaign(self, campaign_id: str) -> int:
        """Delete a campaign's events, analytics row and unsubscribe records.

        Only for campaign deletion and test teardown. Returns the number of
        events removed.
        """
        result = await self.session.execute(
            delete(EngagementEvent).where(EngagementEvent.campaign_id == campaign_id)
        )
        await self.session.execute(
            delete(CampaignAnalytics).where(CampaignAnalytics.campaign_id == campaign_id)
        )
        await self.session.execute(
            delete(UnsubscribeRecord).where(UnsubscribeRecord.campaign_id == campaign_id)
        )
        logger.info("Purged %s events for campaign=%s", result.rowcount, campaign_id)
        return result.rowcount
