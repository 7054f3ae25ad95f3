from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from callsync.core.database import get_db
from callsync.models import SyncStatus
from callsync.schemas import PaginatedSyncLogs, SyncLogOut
from callsync.services.audit import SyncLogFilters, query_sync_logs

router = APIRouter(prefix="/sync-logs", tags=["sync-logs"])


@router.get("", response_model=PaginatedSyncLogs)
def list_sync_logs(
    record_id: int | None = None,
    caller_id: str | None = None,
    status: SyncStatus | None = None,
    platform_call_id: str | None = None,
    from_date: datetime | None = Query(default=None, alias="from"),
    to_date: datetime | None = Query(default=None, alias="to"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    filters = SyncLogFilters(
        call_record_id=record_id,
        caller_id=caller_id,
        status=status,
        platform_call_id=platform_call_id,
        since=from_date,
        until=to_date,
    )
    items, total = query_sync_logs(db, filters, page=page, page_size=page_size)
    return PaginatedSyncLogs(
        items=[SyncLogOut.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )
