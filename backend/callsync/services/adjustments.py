import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import and_
from sqlalchemy.orm import Session

from callsync.core.config import settings
from callsync.models import (
    AdjustmentRecord,
    CallRecord,
    SyncStatus,
    TrafficCategory,
)
from callsync.schemas import AdjustmentIn, MergeResult
from callsync.services.matching import Match, select_nearest

logger = logging.getLogger(__name__)

IdentityKey = Tuple[str, Optional[datetime], str]


def store_adjustments(db: Session, adjustments: Iterable[AdjustmentIn]) -> Tuple[int, int]:
    """Insert adjustments whose call sid is new; known sids are left untouched."""
    stored = 0
    skipped = 0
    seen_sids: Set[str] = set()
    for item in adjustments:
        if item.call_sid in seen_sids:
            skipped += 1
            continue
        seen_sids.add(item.call_sid)
        exists = db.query(AdjustmentRecord.id).filter(AdjustmentRecord.call_sid == item.call_sid).first()
        if exists:
            skipped += 1
            continue
        db.add(
            AdjustmentRecord(
                call_sid=item.call_sid,
                call_time=item.call_time,
                adjustment_time=item.adjustment_time,
                caller_id=item.caller_id,
                campaign_phone=item.campaign_phone,
                amount=item.amount,
                classification=item.classification,
                duration=item.duration,
            )
        )
        stored += 1
    db.commit()
    return stored, skipped


def _same_day_calls(db: Session, caller_id: str, when: datetime) -> List[CallRecord]:
    day_start = when.replace(hour=0, minute=0, second=0, microsecond=0)
    return (
        db.query(CallRecord)
        .filter(
            and_(
                CallRecord.caller_id == caller_id,
                CallRecord.call_time >= day_start,
                CallRecord.call_time < day_start + timedelta(days=1),
            )
        )
        .all()
    )


def _apply_adjustment(record: CallRecord, adjustment: AdjustmentIn) -> None:
    unchanged = (
        record.adjustment_amount == adjustment.amount
        and record.adjustment_time == adjustment.adjustment_time
    )
    if unchanged:
        return
    record.adjustment_time = adjustment.adjustment_time
    record.adjustment_amount = adjustment.amount
    record.adjustment_classification = adjustment.classification
    record.adjustment_duration = adjustment.duration
    if record.sync_status != SyncStatus.CANNOT_SYNC:
        record.sync_status = SyncStatus.PENDING


def _insert_unmatched(
    db: Session, adjustment: AdjustmentIn, batch_keys: Set[IdentityKey]
) -> bool:
    record = CallRecord(
        call_time=adjustment.call_time,
        caller_id=adjustment.caller_id,
        campaign_phone=adjustment.campaign_phone,
        payout=0.0,
        category=TrafficCategory.STATIC,
        adjustment_time=adjustment.adjustment_time,
        adjustment_amount=adjustment.amount,
        adjustment_classification=adjustment.classification,
        adjustment_duration=adjustment.duration,
        unmatched=True,
        sync_status=SyncStatus.PENDING,
    )
    key = record.identity_key()
    if key in batch_keys:
        return False
    batch_keys.add(key)
    existing = (
        db.query(CallRecord.id)
        .filter(
            and_(
                CallRecord.caller_id == key[0],
                CallRecord.call_minute == key[1],
                CallRecord.campaign_phone == key[2],
            )
        )
        .first()
    )
    if existing:
        return False
    db.add(record)
    return True


def merge_adjustments(
    db: Session,
    adjustments: List[AdjustmentIn],
    window_minutes: Optional[float] = None,
    batch_keys: Optional[Set[IdentityKey]] = None,
) -> MergeResult:
    """Attach scraped adjustments to local call rows.

    Each adjustment is matched to the nearest same-caller call on the same day
    within the window. A call claimed by several adjustments keeps the nearest
    one; every adjustment left over becomes a new unmatched call row with a
    zero payout. ``batch_keys`` holds the identity keys already inserted by the
    current batch and may be shared across calls that belong to one batch.
    """
    window = settings.adjustment_window_minutes if window_minutes is None else window_minutes
    batch_keys = set() if batch_keys is None else batch_keys
    result = MergeResult()
    result.stored, result.skipped_duplicates = store_adjustments(db, adjustments)

    best_for_call: Dict[int, Tuple[float, int]] = {}
    matches: Dict[int, Match[CallRecord]] = {}
    for position, adjustment in enumerate(adjustments):
        match = select_nearest(
            adjustment.call_time,
            _same_day_calls(db, adjustment.caller_id, adjustment.call_time),
            window,
            time_of=lambda record: record.call_time,
            id_of=lambda record: record.id,
        )
        if match is None:
            continue
        matches[position] = match
        rank = (match.delta_minutes, position)
        current = best_for_call.get(match.candidate.id)
        if current is None or rank < current:
            best_for_call[match.candidate.id] = rank

    winners = {position for _, position in best_for_call.values()}
    for position, adjustment in enumerate(adjustments):
        if position in winners:
            _apply_adjustment(matches[position].candidate, adjustment)
            result.matched += 1
        elif _insert_unmatched(db, adjustment, batch_keys):
            result.unmatched_inserted += 1
    db.commit()

    logger.info(
        "Merged adjustments: %s stored, %s duplicate sids, %s matched, %s inserted unmatched",
        result.stored,
        result.skipped_duplicates,
        result.matched,
        result.unmatched_inserted,
    )
    return result
