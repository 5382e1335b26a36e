from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from app.core.config import settings

celery_app = Celery(
    "engagetrack",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.tasks.analytics",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=5 * 60,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_queues=[
        Queue("default", routing_key="default"),
    ],
    beat_schedule={
        "sweep-campaign-analytics": {
            "task": "app.tasks.analytics.sweep_recent_campaigns",
            "schedule": crontab(minute="*/5"),
            "options": {"queue": "default"},
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
