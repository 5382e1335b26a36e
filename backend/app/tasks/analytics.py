"""
Celery tasks for campaign analytics aggregation.

Each task bridges sync Celery to the async aggregator with asyncio.run().
Every run gets a fresh event loop, so pooled database and Redis connections
are released before the loop closes.
"""

import asyncio
import logging

from celery import shared_task

from app.db.postgres import async_session_maker, engine
from app.db.redis import redis_client
from app.services.analytics_service import REFRESH_PENDING_KEY, analytics_service

logger = logging.getLogger(__name__)


async def _release_connections() -> None:
    await redis_client.close()
    await engine.dispose()


@shared_task(bind=True, queue="default", max_retries=3, default_retry_delay=30)
def refresh_campaign_analytics(self, campaign_id: str) -> dict:
    """Recompute one campaign's analytics row.

    Queued by the tracking endpoints when refreshes are deferred. Clears the
    debounce key first so events arriving during the refresh queue another.
    """

    async def _run():
        try:
            try:
                await redis_client.delete(REFRESH_PENDING_KEY.format(campaign_id=campaign_id))
            except Exception as exc:
                logger.warning("Could not clear refresh debounce for %s: %s", campaign_id, exc)
            row = await analytics_service.refresh(campaign_id)
            return {"campaign_id": campaign_id, "events_processed": row.events_processed}
        finally:
            await _release_connections()

    try:
        return asyncio.run(_run())
    except Exception as exc:
        logger.warning(
            "Retrying analytics refresh for campaign %s (attempt %d/%d): %s",
            campaign_id,
            self.request.retries + 1,
            self.max_retries,
            exc,
        )
        raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))


@shared_task(bind=True, queue="default")
def sweep_recent_campaigns(self) -> dict:
    """Refresh every campaign whose stored row lags behind its events.

    Runs on the beat schedule and heals refreshes that were lost to worker
    restarts or aggregation errors.
    """

    async def _run():
        try:
            async with async_session_maker() as session:
                campaign_ids = await analytics_service.stale_campaign_ids(session)

            refreshed, failed = [], []
            for campaign_id in campaign_ids:
                try:
                    await analytics_service.refresh(campaign_id)
                    refreshed.append(campaign_id)
                except Exception as exc:
                    logger.error("Sweep refresh failed for campaign %s: %s", campaign_id, exc)
                    failed.append(campaign_id)
            return {"refreshed": refreshed, "failed": failed}
        finally:
            await _release_connections()

    result = asyncio.run(_run())
    if result["refreshed"] or result["failed"]:
        logger.info(
            "Analytics sweep: %d refreshed, %d failed",
            len(result["refreshed"]),
            len(result["failed"]),
        )
    return result
