import logging

from celery import shared_task
from sqlalchemy.orm import Session

from callsync.core.database import SessionLocal
from callsync.models import TrafficCategory
from callsync.services.locks import RunLock
from callsync.services.sync import sync_from_settings

logger = logging.getLogger(__name__)


@shared_task(name="callsync.tasks.sync_billing_platform", bind=True)
def sync_billing_platform(self, category: str | None = None) -> dict:
    traffic = TrafficCategory(category) if category else None
    with RunLock(category or "all").hold() as acquired:
        if not acquired:
            logger.warning("Sync for %s already running, skipping this run", category or "all categories")
            return {"skipped_run": True}
        db: Session = SessionLocal()
        try:
            return sync_from_settings(db, category=traffic).model_dump()
        finally:
            db.close()
