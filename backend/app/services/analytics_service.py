"""
Campaign analytics aggregation.

The campaign_analytics row is a materialized view over engagement_events.
A refresh never increments counters in place: it recomputes every counter
from the campaign's events in one aggregate statement and writes the result
with a single conditional upsert. The upsert only replaces the stored row
when the new snapshot was computed from more events than the stored one, so
a slow refresh holding an older snapshot cannot overwrite a newer result.
Because the ledger is append-only, two snapshots with the same event count
cover the same events, which makes repeated refreshes exact no-ops.

Refreshes for different campaigns touch different rows and never contend.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.postgres import async_session_maker, dialect_insert
from app.db.redis import redis_client
from app.models.engagement import (
    OPEN_EVENT_TYPES,
    CampaignAnalytics,
    EngagementEvent,
    EventType,
)
from app.schemas.engagement import (
    CampaignAnalyticsResponse,
    EngagementDataPoint,
    LinkClickSummary,
    RecipientSummary,
)

logger = logging.getLogger(__name__)

CACHE_KEY = "analytics:campaign:{campaign_id}"
# Marks a deferred refresh as already queued
REFRESH_PENDING_KEY = "analytics:refresh_pending:{campaign_id}"


@dataclass(frozen=True)
class AnalyticsSnapshot:
    """Counters computed from one consistent read of a campaign's events."""
    events_processed: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    opened_count: int = 0
    unique_opened_count: int = 0
    clicked_count: int = 0
    unique_clicked_count: int = 0
    bounced_count: int = 0
    complained_count: int = 0
    unsubscribed_count: int = 0
    last_event_at: Optional[datetime] = None


def _count_of(*event_types: str):
    return func.count(case((EngagementEvent.event_type.in_(event_types), 1)))


def _distinct_recipients_of(*event_types: str):
    # tracking_id identifies the send; fall back to the address for events without one
    recipient_key = func.coalesce(EngagementEvent.tracking_id, EngagementEvent.recipient_email)
    return func.count(
        case((EngagementEvent.event_type.in_(event_types), recipient_key)).distinct()
    )


def _rate(numerator: int, denominator: int) -> float:
    return round(numerator / denominator * 100, 2) if denominator > 0 else 0.0


class AnalyticsService:
    """Derive, store and read per-campaign engagement analytics."""

    # ------------------------------------------------------------------ #
    #  Aggregation
    # ------------------------------------------------------------------ #

    async def compute_snapshot(self, session: AsyncSession, campaign_id: str) -> AnalyticsSnapshot:
        """Compute every counter for a campaign in a single statement."""
        result = await session.execute(
            select(
                func.count(EngagementEvent.id).label("events_processed"),
                _count_of(EventType.SENT.value).label("sent_count"),
                _count_of(EventType.DELIVERED.value).label("delivered_count"),
                _count_of(*OPEN_EVENT_TYPES).label("opened_count"),
                _distinct_recipients_of(*OPEN_EVENT_TYPES).label("unique_opened_count"),
                _count_of(EventType.CLICKED.value).label("clicked_count"),
                _distinct_recipients_of(EventType.CLICKED.value).label("unique_clicked_count"),
                _count_of(EventType.BOUNCED.value).label("bounced_count"),
                _count_of(EventType.COMPLAINED.value).label("complained_count"),
                _count_of(EventType.UNSUBSCRIBED.value).label("unsubscribed_count"),
                func.max(EngagementEvent.created_at).label("last_event_at"),
            ).where(EngagementEvent.campaign_id == campaign_id)
        )
        row = result.one()
        return AnalyticsSnapshot(
            events_processed=row.events_processed or 0,
            sent_count=row.sent_count or 0,
            delivered_count=row.delivered_count or 0,
            opened_count=row.opened_count or 0,
            unique_opened_count=row.unique_opened_count or 0,
            clicked_count=row.clicked_count or 0,
            unique_clicked_count=row.unique_clicked_count or 0,
            bounced_count=row.bounced_count or 0,
            complained_count=row.complained_count or 0,
            unsubscribed_count=row.unsubscribed_count or 0,
            last_event_at=row.last_event_at,
        )

    async def store_snapshot(
        self,
        session: AsyncSession,
        campaign_id: str,
        snapshot: AnalyticsSnapshot,
    ) -> CampaignAnalytics:
        """Atomically write a snapshot unless the stored row is at least as fresh.

        Returns the row as stored after the write.
        """
        now = datetime.utcnow()
        values = asdict(snapshot)
        insert = dialect_insert(session)

        stmt = insert(CampaignAnalytics).values(
            id=uuid4(),
            campaign_id=campaign_id,
            created_at=now,
            updated_at=now,
            **values,
        )
        table = CampaignAnalytics.__table__
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.campaign_id],
            set_={
                **{name: getattr(stmt.excluded, name) for name in values},
                "updated_at": stmt.excluded.updated_at,
            },
            where=table.c.events_processed < stmt.excluded.events_processed,
        )
        await session.execute(stmt)

        result = await session.execute(
            select(CampaignAnalytics)
            .where(CampaignAnalytics.campaign_id == campaign_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def refresh(self, campaign_id: str) -> CampaignAnalytics:
        """Recompute a campaign's analytics row from its events.

        Idempotent and safe to run concurrently for the same campaign. A
        campaign without events gets a zero-valued row.
        """
        async with async_session_maker() as session:
            snapshot = await self.compute_snapshot(session, campaign_id)
            row = await self.store_snapshot(session, campaign_id, snapshot)
            await session.commit()

        await self._write_cache(campaign_id, self._to_cached_data(row))

        logger.info(
            "Analytics refreshed: campaign=%s events=%s opens=%s/%s clicks=%s/%s",
            campaign_id,
            row.events_processed,
            row.unique_opened_count,
            row.opened_count,
            row.unique_clicked_count,
            row.clicked_count,
        )
        return row

    async def stale_campaign_ids(self, session: AsyncSession) -> List[str]:
        """Campaigns whose stored row does not reflect every event yet."""
        event_counts = (
            select(
                EngagementEvent.campaign_id.label("campaign_id"),
                func.count(EngagementEvent.id).label("event_count"),
            )
            .group_by(EngagementEvent.campaign_id)
            .subquery()
        )
        result = await session.execute(
            select(event_counts.c.campaign_id)
            .outerjoin(
                CampaignAnalytics,
                CampaignAnalytics.campaign_id == event_counts.c.campaign_id,
            )
            .where(
                func.coalesce(CampaignAnalytics.events_processed, -1) != event_counts.c.event_count
            )
        )
        return [row[0] for row in result.all()]

    # ------------------------------------------------------------------ #
    #  Reads
    # ------------------------------------------------------------------ #

    async def get_campaign_analytics(self, campaign_id: str) -> Dict[str, Any]:
        """Stored analytics plus derived rates, cached in Redis.

        A campaign that was never aggregated is refreshed first.
        """
        cache_key = CACHE_KEY.format(campaign_id=campaign_id)
        try:
            cached = await redis_client.get_json(cache_key)
        except Exception as exc:
            logger.warning("Analytics cache read failed for %s: %s", campaign_id, exc)
            cached = None
        if cached:
            return cached

        async with async_session_maker() as session:
            result = await session.execute(
                select(CampaignAnalytics).where(CampaignAnalytics.campaign_id == campaign_id)
            )
            row = result.scalar_one_or_none()

        if row is None:
            # refresh() caches the row it stored
            return self._to_cached_data(await self.refresh(campaign_id))

        data = self._to_cached_data(row)
        # A refresh that committed after our SELECT has already cached a newer row
        await self._write_cache(campaign_id, data, only_if_absent=True)
        return data

    def compute_rates(self, analytics: CampaignAnalyticsResponse) -> Dict[str, float]:
        """Percentages derived from the counters.

        Engagement rates use delivered as the base when delivery events
        exist, otherwise sent.
        """
        base = analytics.delivered_count if analytics.delivered_count > 0 else analytics.sent_count
        return {
            "open_rate": _rate(analytics.unique_opened_count, base),
            "click_rate": _rate(analytics.unique_clicked_count, base),
            "click_to_open_rate": _rate(analytics.unique_clicked_count, analytics.unique_opened_count),
            "bounce_rate": _rate(analytics.bounced_count, analytics.sent_count),
            "complaint_rate": _rate(analytics.complained_count, base),
            "unsubscribe_rate": _rate(analytics.unsubscribed_count, base),
            "delivery_rate": _rate(analytics.delivered_count, analytics.sent_count),
        }

    def build_timeline(
        self,
        events: Iterable[EngagementEvent],
        granularity: str = "hour",
    ) -> List[EngagementDataPoint]:
        """Bucket opens, clicks, bounces and complaints by hour or day."""
        buckets: Dict[datetime, EngagementDataPoint] = {}
        for event in events:
            ts = event.created_at.replace(minute=0, second=0, microsecond=0)
            if granularity == "day":
                ts = ts.replace(hour=0)

            point = buckets.get(ts)
            if point is None:
                point = buckets[ts] = EngagementDataPoint(timestamp=ts)

            if event.event_type in OPEN_EVENT_TYPES:
                point.opens += 1
            elif event.event_type == EventType.CLICKED.value:
                point.clicks += 1
            elif event.event_type == EventType.BOUNCED.value:
                point.bounces += 1
            elif event.event_type == EventType.COMPLAINED.value:
                point.complaints += 1

        return [buckets[ts] for ts in sorted(buckets)]

    def summarize_recipients(self, events: Iterable[EngagementEvent]) -> List[RecipientSummary]:
        """Per-send engagement summary, one entry per tracking ID."""
        summaries: Dict[str, RecipientSummary] = {}
        key_by_email: Dict[str, str] = {}
        links: Dict[str, Dict[str, List[datetime]]] = defaultdict(lambda: defaultdict(list))

        ordered = sorted(events, key=lambda e: (e.event_type != EventType.SENT.value, e.created_at))
        for event in ordered:
            key = event.tracking_id or key_by_email.get(event.recipient_email or "")
            if key is None:
                key = f"email:{event.recipient_email}"

            summary = summaries.get(key)
            if summary is None:
                summary = summaries[key] = RecipientSummary(
                    tracking_id=event.tracking_id,
                    email=event.recipient_email,
                )
            if event.recipient_email and event.tracking_id:
                key_by_email.setdefault(event.recipient_email, key)

            at = event.created_at
            event_type = event.event_type
            if event_type == EventType.SENT.value:
                summary.sent_at = at
            elif event_type == EventType.DELIVERED.value:
                summary.delivered_at = at
            elif event_type in OPEN_EVENT_TYPES:
                summary.open_count += 1
                if event_type == EventType.FORWARDED.value:
                    summary.forwarded_count += 1
                summary.first_opened_at = min(filter(None, [summary.first_opened_at, at]))
                summary.last_opened_at = max(filter(None, [summary.last_opened_at, at]))
            elif event_type == EventType.CLICKED.value:
                summary.click_count += 1
                summary.first_clicked_at = min(filter(None, [summary.first_clicked_at, at]))
                summary.last_clicked_at = max(filter(None, [summary.last_clicked_at, at]))
                url = (event.event_data or {}).get("url")
                if url:
                    links[key][url].append(at)
            elif event_type == EventType.BOUNCED.value:
                summary.bounced_at = at
                summary.bounce_type = (event.event_data or {}).get("bounce_type")
            elif event_type == EventType.UNSUBSCRIBED.value:
                summary.unsubscribed_at = at

        for key, by_url in links.items():
            summaries[key].links_clicked = [
                LinkClickSummary(
                    url=url,
                    clicks=len(times),
                    first_clicked=min(times),
                    last_clicked=max(times),
                )
                for url, times in sorted(by_url.items())
            ]
        return list(summaries.values())

    def _to_cached_data(self, row: CampaignAnalytics) -> Dict[str, Any]:
        response = CampaignAnalyticsResponse.model_validate(row)
        response.rates = self.compute_rates(response)
        return response.model_dump(mode="json")

    async def _write_cache(self, campaign_id: str, data: Dict[str, Any], only_if_absent: bool = False) -> None:
        try:
            await redis_client.set_json(
                CACHE_KEY.format(campaign_id=campaign_id),
                data,
                ex=settings.analytics_cache_ttl,
                nx=only_if_absent,
            )
        except Exception as exc:
            logger.warning("Analytics cache write failed for %s: %s", campaign_id, exc)


# Singleton instance
analytics_service = AnalyticsService()
