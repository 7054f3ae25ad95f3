from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Tuple

from sqlalchemy import and_
from sqlalchemy.orm import Session

from callsync.errors import ErrorCode
from callsync.models import CallRecord, SyncLogEntry, SyncStatus

EVENT_WRITTEN = "written"
EVENT_SKIPPED_MATCHES = "skipped_matches"
EVENT_REVENUE_SKIPPED = "revenue_skipped"
EVENT_CANNOT_SYNC = "cannot_sync"
EVENT_NOT_FOUND = "not_found"
EVENT_ERROR = "error"


def log_sync_attempt(
    db: Session,
    record: CallRecord,
    status: SyncStatus,
    event: str,
    *,
    platform_call_id: Optional[str] = None,
    revenue: Optional[float] = None,
    payout: Optional[float] = None,
    lookup_result: Optional[dict] = None,
    leg_resolution: Optional[dict] = None,
    api_request: Any = None,
    api_response: Any = None,
    error_code: Optional[ErrorCode] = None,
    error_message: Optional[str] = None,
    attempted_at: Optional[datetime] = None,
) -> SyncLogEntry:
    entry = SyncLogEntry(
        call_record_id=record.id,
        caller_id=record.caller_id,
        call_time=record.call_time,
        category=record.category,
        adjustment_amount=record.adjustment_amount,
        adjustment_classification=record.adjustment_classification,
        platform_call_id=platform_call_id or record.platform_call_id,
        status=status,
        event=event,
        revenue=revenue,
        payout=payout,
        lookup_result=lookup_result,
        leg_resolution=leg_resolution,
        api_request=api_request,
        api_response=api_response,
        error_code=error_code.value if error_code else None,
        error_message=error_message,
        attempted_at=attempted_at or datetime.utcnow(),
        completed_at=datetime.utcnow(),
    )
    db.add(entry)
    db.commit()
    return entry


@dataclass
class SyncLogFilters:
    call_record_id: Optional[int] = None
    caller_id: Optional[str] = None
    status: Optional[SyncStatus] = None
    platform_call_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


def query_sync_logs(
    db: Session, filters: SyncLogFilters, page: int = 1, page_size: int = 50
) -> Tuple[List[SyncLogEntry], int]:
    query = db.query(SyncLogEntry)
    conditions = []
    if filters.call_record_id is not None:
        conditions.append(SyncLogEntry.call_record_id == filters.call_record_id)
    if filters.caller_id:
        conditions.append(SyncLogEntry.caller_id == filters.caller_id)
    if filters.status:
        conditions.append(SyncLogEntry.status == filters.status)
    if filters.platform_call_id:
        conditions.append(SyncLogEntry.platform_call_id == filters.platform_call_id)
    if filters.since:
        conditions.append(SyncLogEntry.attempted_at >= filters.since)
    if filters.until:
        conditions.append(SyncLogEntry.attempted_at <= filters.until)
    if conditions:
        query = query.filter(and_(*conditions))
    total = query.count()
    items = (
        query.order_by(SyncLogEntry.attempted_at.desc(), SyncLogEntry.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total
