from typing import List, Optional, Tuple

from sqlalchemy import and_, case, or_
from sqlalchemy.orm import Session

from callsync.models import CallRecord, SyncStatus, TrafficCategory

ZERO_SNAP_EPSILON = 0.005
PAYOUT_TOLERANCE = 0.01

STATIC_RETRYABLE = (SyncStatus.PENDING, SyncStatus.FAILED, SyncStatus.NOT_FOUND)


def is_syncable_caller_id(caller_id: Optional[str]) -> bool:
    value = (caller_id or "").strip().lower()
    if not value or "anonymous" in value:
        return False
    return any(char.isdigit() for char in value)


def has_pending_adjustment(record: CallRecord) -> bool:
    return record.adjustment_amount is not None and record.sync_status != SyncStatus.SUCCESS


def as_amount(value: object) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def snap_zero(value: float) -> float:
    return 0.0 if abs(value) < ZERO_SNAP_EPSILON else value


def value_to_write(record: CallRecord) -> Tuple[float, str]:
    """Return the single amount written to both revenue and payout, and where it came from."""
    payout = as_amount(record.payout)
    if payout is not None:
        return snap_zero(payout), "payout"
    revenue = as_amount(record.revenue)
    if revenue is not None:
        return snap_zero(revenue), "revenue"
    return 0.0, "default"


def can_skip_write(
    record_has_pending_adjustment: bool,
    platform_payout: Optional[float],
    value: float,
    platform_revenue: Optional[float] = None,
    revenue_leg_connected: bool = False,
) -> bool:
    """A write is skipped only when the platform already holds ``value`` everywhere it would be written.

    A connected revenue leg must carry the value too, otherwise a payout-only
    partial write from an earlier pass would be taken as a finished sync.
    """
    if record_has_pending_adjustment:
        return False
    if abs(float(platform_payout or 0) - value) >= PAYOUT_TOLERANCE:
        return False
    if revenue_leg_connected:
        return abs(float(platform_revenue or 0) - value) < PAYOUT_TOLERANCE
    return True


def _static_due():
    return and_(
        CallRecord.category == TrafficCategory.STATIC,
        CallRecord.sync_status.in_(STATIC_RETRYABLE),
    )


def _api_due():
    return and_(
        CallRecord.category == TrafficCategory.API,
        CallRecord.sync_status != SyncStatus.CANNOT_SYNC,
    )


def select_due_records(
    db: Session, category: Optional[TrafficCategory] = None, limit: int = 100
) -> List[CallRecord]:
    """Load the next bounded batch of rows due for a sync pass.

    STATIC rows carrying an adjustment come first, then the other retryable
    STATIC rows by id. API rows are always due; the least recently validated
    ones come first so a large backlog still rotates through.
    """
    if category == TrafficCategory.STATIC:
        condition = _static_due()
    elif category == TrafficCategory.API:
        condition = _api_due()
    else:
        condition = or_(_static_due(), _api_due())

    priority = case(
        (and_(CallRecord.category == TrafficCategory.STATIC, CallRecord.adjustment_amount.isnot(None)), 0),
        else_=1,
    )
    never_synced = case((CallRecord.sync_at.is_(None), 0), else_=1)
    return (
        db.query(CallRecord)
        .filter(condition)
        .order_by(priority, never_synced, CallRecord.sync_at, CallRecord.id)
        .limit(limit)
        .all()
    )
