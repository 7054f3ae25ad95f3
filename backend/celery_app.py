from celery import Celery
from celery.signals import after_setup_logger

from callsync.core.config import settings
from callsync.core.logs import configure_logging

celery_app = Celery(
    "callsync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["callsync.tasks"],
)

celery_app.conf.beat_schedule = {
    "sync-billing-static": {
        "task": "callsync.tasks.sync_billing_platform",
        "schedule": settings.sync_schedule_seconds,
        "kwargs": {"category": "STATIC"},
    },
    "sync-billing-api": {
        "task": "callsync.tasks.sync_billing_platform",
        "schedule": settings.sync_schedule_seconds,
        "kwargs": {"category": "API"},
    },
}


@after_setup_logger.connect
def setup_logging(logger, **kwargs):
    configure_logging()
