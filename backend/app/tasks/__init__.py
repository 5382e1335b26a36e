from app.tasks.analytics import refresh_campaign_analytics, sweep_recent_campaigns

__all__ = [
    "refresh_campaign_analytics",
    "sweep_recent_campaigns",
]
