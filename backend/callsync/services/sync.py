import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from callsync.core.config import Settings, settings as default_settings
from callsync.errors import BillingAPIError, ErrorCode, LegResolutionError
from callsync.models import CallRecord, SyncStatus, TrafficCategory
from callsync.results import Failure, Ok, Result
from callsync.schemas import BillingCallLeg, OverridePayload, SyncSummary
from callsync.services import audit
from callsync.services.billing_client import BillingClient, PlatformClient
from callsync.services.legs import LegResolution, resolve_legs
from callsync.services.matching import LookupCandidate
from callsync.services.policy import (
    as_amount,
    can_skip_write,
    has_pending_adjustment,
    is_syncable_caller_id,
    select_due_records,
    value_to_write,
)

logger = logging.getLogger(__name__)

OUTCOME_SYNCED = "synced"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"

NOT_CONNECTED_MARKERS = ("not connected", "revenue", "conversion")


@dataclass
class RecordOutcome:
    record_id: int
    status: SyncStatus
    outcome: str
    platform_call_id: Optional[str] = None
    value: Optional[float] = None
    revenue_skipped: bool = False
    error: Optional[Failure] = None


@dataclass
class WriteResult:
    requests: List[Dict[str, Any]] = field(default_factory=list)
    responses: List[Dict[str, Any]] = field(default_factory=list)
    revenue_skipped: bool = False


def update_sync_status(
    db: Session,
    record: CallRecord,
    status: SyncStatus,
    platform_call_id: Optional[str] = None,
    response: Any = None,
) -> None:
    record.sync_status = status
    if platform_call_id:
        record.platform_call_id = platform_call_id
    record.sync_at = datetime.utcnow()
    record.sync_response = response
    db.commit()


def is_not_connected_rejection(error: BillingAPIError, leg: BillingCallLeg) -> bool:
    if leg.connected:
        return False
    message = error.message.lower()
    return any(marker in message for marker in NOT_CONNECTED_MARKERS)


def _lookup(client: PlatformClient, record: CallRecord, window_minutes: float) -> Result[Optional[LookupCandidate]]:
    try:
        candidate = client.lookup_call(
            record.caller_id,
            record.call_time,
            window_minutes,
            expected_payout=as_amount(record.payout),
            known_call_id=record.platform_call_id,
        )
    except (BillingAPIError, ValueError) as exc:
        return Failure(ErrorCode.LOOKUP_FAILED, f"Call lookup failed: {exc}")
    return Ok(candidate)


def _resolve(client: PlatformClient, call_id: str) -> Result[LegResolution]:
    try:
        chain = client.get_leg_chain(call_id)
        return Ok(resolve_legs(call_id, chain))
    except (BillingAPIError, LegResolutionError, ValueError) as exc:
        return Failure(ErrorCode.LEG_RESOLUTION_FAILED, f"Cannot resolve payment legs: {exc}")


def _override(
    client: PlatformClient, leg_id: str, payload: OverridePayload, written: WriteResult
) -> Dict[str, Any]:
    written.requests.append(payload.to_request(leg_id))
    response = client.override_payment(leg_id, payload)
    written.responses.append({"leg_id": leg_id, "response": response})
    return response


def _write_overrides(
    client: PlatformClient, resolution: LegResolution, value: float, reason: str
) -> Result[WriteResult]:
    """Push ``value`` as both payout and revenue onto the resolved legs."""
    written = WriteResult()
    payout_leg = resolution.payout_leg
    revenue_leg = resolution.revenue_leg

    if resolution.is_same_leg:
        combined = OverridePayload(reason=reason, new_payout_amount=value, new_conversion_amount=value)
        try:
            _override(client, payout_leg.leg_id, combined, written)
            return Ok(written)
        except BillingAPIError as exc:
            if not is_not_connected_rejection(exc, payout_leg):
                return Failure(
                    ErrorCode.OVERRIDE_FAILED,
                    f"Update single leg failed: {exc}",
                    {"api_request": written.requests, "api_response": exc.to_dict()},
                )
            logger.info("Revenue rejected for non-connected leg %s, retrying payout only: %s", payout_leg.leg_id, exc)
            written.responses.append({"leg_id": payout_leg.leg_id, "revenue_skipped": exc.message})
        payout_only = OverridePayload(reason=reason, new_payout_amount=value)
        try:
            _override(client, payout_leg.leg_id, payout_only, written)
        except BillingAPIError as exc:
            return Failure(
                ErrorCode.OVERRIDE_FAILED,
                f"Update single leg failed (payout only): {exc}",
                {"api_request": written.requests, "api_response": exc.to_dict()},
            )
        written.revenue_skipped = True
        return Ok(written)

    try:
        _override(client, payout_leg.leg_id, OverridePayload(reason=reason, new_payout_amount=value), written)
    except BillingAPIError as exc:
        return Failure(
            ErrorCode.OVERRIDE_FAILED,
            f"Update payout leg failed: {exc}",
            {"api_request": written.requests, "api_response": exc.to_dict()},
        )
    try:
        _override(client, revenue_leg.leg_id, OverridePayload(reason=reason, new_conversion_amount=value), written)
    except BillingAPIError as exc:
        if not is_not_connected_rejection(exc, revenue_leg):
            return Failure(
                ErrorCode.OVERRIDE_FAILED,
                f"Update revenue leg failed: {exc}",
                {"api_request": written.requests, "api_response": exc.to_dict()},
            )
        logger.info("Revenue rejected for non-connected leg %s: %s", revenue_leg.leg_id, exc)
        written.responses.append({"leg_id": revenue_leg.leg_id, "revenue_skipped": exc.message})
        written.revenue_skipped = True
    return Ok(written)


def _fail(
    db: Session,
    record: CallRecord,
    failure: Failure,
    attempted_at: datetime,
    platform_call_id: Optional[str] = None,
    lookup_result: Optional[dict] = None,
    leg_resolution: Optional[dict] = None,
    value: Optional[float] = None,
) -> RecordOutcome:
    if failure.code == ErrorCode.INVALID_CALLER_ID:
        status, event = SyncStatus.CANNOT_SYNC, audit.EVENT_CANNOT_SYNC
    elif failure.code == ErrorCode.NOT_FOUND:
        status, event = SyncStatus.NOT_FOUND, audit.EVENT_NOT_FOUND
    else:
        status, event = SyncStatus.FAILED, audit.EVENT_ERROR
    logger.warning("Call record %s -> %s (%s): %s", record.id, status.value, failure.code.value, failure.message)
    update_sync_status(db, record, status, response={"error": failure.message, "code": failure.code.value})
    audit.log_sync_attempt(
        db,
        record,
        status,
        event,
        platform_call_id=platform_call_id,
        revenue=value,
        payout=value,
        lookup_result=lookup_result,
        leg_resolution=leg_resolution,
        api_request=failure.context.get("api_request"),
        api_response=failure.context.get("api_response"),
        error_code=failure.code,
        error_message=failure.message,
        attempted_at=attempted_at,
    )
    return RecordOutcome(
        record_id=record.id,
        status=status,
        outcome=OUTCOME_FAILED,
        platform_call_id=platform_call_id,
        error=failure,
    )


def sync_record(db: Session, client: PlatformClient, record: CallRecord, config: Settings | None = None) -> RecordOutcome:
    config = config or default_settings
    attempted_at = datetime.utcnow()

    if not is_syncable_caller_id(record.caller_id):
        failure = Failure(
            ErrorCode.INVALID_CALLER_ID,
            f"Anonymous or invalid caller ID cannot be synced: {record.caller_id!r}",
        )
        return _fail(db, record, failure, attempted_at)

    pending_adjustment = has_pending_adjustment(record)
    value, value_source = value_to_write(record)

    lookup = _lookup(client, record, config.lookup_window_minutes)
    if isinstance(lookup, Failure):
        return _fail(db, record, lookup, attempted_at)
    candidate = lookup.value
    if candidate is None:
        failure = Failure(
            ErrorCode.NOT_FOUND,
            f"Call not found on billing platform for caller {record.caller_id} at {record.call_time}",
        )
        return _fail(db, record, failure, attempted_at)

    call_id = candidate.call_id
    lookup_result = candidate.to_dict()
    if candidate.payout_match is False:
        logger.warning(
            "Payout mismatch for platform call %s: platform=%s expected=%s, proceeding",
            call_id,
            candidate.payout,
            record.payout,
        )
    # Commit pending with the matched id before any remote write.
    update_sync_status(db, record, SyncStatus.PENDING, platform_call_id=call_id, response={"lookup": lookup_result})

    legs = _resolve(client, call_id)
    if isinstance(legs, Failure):
        return _fail(db, record, legs, attempted_at, platform_call_id=call_id, lookup_result=lookup_result)
    resolution = legs.value
    leg_summary = resolution.to_dict()
    leg_summary["value_source"] = value_source

    platform_payout = resolution.payout_leg.payout
    platform_revenue = resolution.revenue_leg.revenue
    if can_skip_write(
        pending_adjustment,
        platform_payout,
        value,
        platform_revenue=platform_revenue,
        revenue_leg_connected=resolution.revenue_leg.connected,
    ):
        response = {
            "message": "Payout already matches, no update needed",
            "platform_payout": platform_payout,
            "platform_revenue": platform_revenue,
            "value": value,
        }
        update_sync_status(db, record, SyncStatus.SUCCESS, platform_call_id=call_id, response=response)
        audit.log_sync_attempt(
            db,
            record,
            SyncStatus.SUCCESS,
            audit.EVENT_SKIPPED_MATCHES,
            platform_call_id=call_id,
            revenue=value,
            payout=value,
            lookup_result=lookup_result,
            leg_resolution=leg_summary,
            api_response={"skipped": "payout_matches"},
            attempted_at=attempted_at,
        )
        return RecordOutcome(
            record_id=record.id,
            status=SyncStatus.SUCCESS,
            outcome=OUTCOME_SKIPPED,
            platform_call_id=call_id,
            value=value,
        )

    written = _write_overrides(client, resolution, value, config.override_reason)
    if isinstance(written, Failure):
        return _fail(
            db,
            record,
            written,
            attempted_at,
            platform_call_id=call_id,
            lookup_result=lookup_result,
            leg_resolution=leg_summary,
            value=value,
        )
    result = written.value
    response = {
        "is_multi_leg": resolution.is_multi_leg,
        "payout_leg_id": resolution.payout_leg_id,
        "revenue_leg_id": resolution.revenue_leg_id,
        "revenue_skipped": result.revenue_skipped,
        "responses": result.responses,
    }
    update_sync_status(db, record, SyncStatus.SUCCESS, platform_call_id=call_id, response=response)
    audit.log_sync_attempt(
        db,
        record,
        SyncStatus.SUCCESS,
        audit.EVENT_REVENUE_SKIPPED if result.revenue_skipped else audit.EVENT_WRITTEN,
        platform_call_id=call_id,
        revenue=value,
        payout=value,
        lookup_result=lookup_result,
        leg_resolution=leg_summary,
        api_request=result.requests,
        api_response=response,
        attempted_at=attempted_at,
    )
    logger.info(
        "Synced call record %s -> %s (value=%.2f, multi_leg=%s, revenue_skipped=%s)",
        record.id,
        call_id,
        value,
        resolution.is_multi_leg,
        result.revenue_skipped,
    )
    return RecordOutcome(
        record_id=record.id,
        status=SyncStatus.SUCCESS,
        outcome=OUTCOME_SYNCED,
        platform_call_id=call_id,
        value=value,
        revenue_skipped=result.revenue_skipped,
    )


def _record_unexpected_failure(db: Session, record_id: int, exc: Exception) -> RecordOutcome:
    message = f"{type(exc).__name__}: {exc}"
    try:
        record = db.get(CallRecord, record_id)
        if record is not None:
            update_sync_status(db, record, SyncStatus.FAILED, response={"error": message})
            audit.log_sync_attempt(db, record, SyncStatus.FAILED, audit.EVENT_ERROR, error_message=message)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not record failure for call record %s", record_id)
    return RecordOutcome(record_id=record_id, status=SyncStatus.FAILED, outcome=OUTCOME_FAILED)


def run_sync(
    db: Session,
    client: PlatformClient,
    category: Optional[TrafficCategory] = None,
    batch_size: Optional[int] = None,
    pacing_seconds: Optional[float] = None,
    config: Settings | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncSummary:
    config = config or default_settings
    limit = batch_size or config.sync_batch_size
    pacing = config.sync_pacing_seconds if pacing_seconds is None else pacing_seconds

    label = category.value if category else "all categories"
    records = select_due_records(db, category=category, limit=limit)
    summary = SyncSummary()
    if not records:
        logger.info("No call records due for sync (%s)", label)
        return summary
    logger.info("Syncing %s call records (%s)", len(records), label)

    record_ids = [record.id for record in records]
    for index, record_id in enumerate(record_ids):
        if index and pacing > 0:
            sleep(pacing)
        try:
            record = db.get(CallRecord, record_id)
            outcome = sync_record(db, client, record, config=config)
        except Exception as exc:
            db.rollback()
            logger.exception("Unexpected error syncing call record %s", record_id)
            outcome = _record_unexpected_failure(db, record_id, exc)

        if outcome.outcome == OUTCOME_SYNCED:
            summary.synced += 1
        elif outcome.outcome == OUTCOME_SKIPPED:
            summary.skipped += 1
        else:
            summary.failed += 1
        status_key = outcome.status.value
        summary.by_status[status_key] = summary.by_status.get(status_key, 0) + 1

    logger.info(
        "Sync completed (%s): %s synced, %s skipped, %s failed",
        label,
        summary.synced,
        summary.skipped,
        summary.failed,
    )
    return summary


def sync_from_settings(
    db: Session,
    category: Optional[TrafficCategory] = None,
    batch_size: Optional[int] = None,
    config: Settings | None = None,
) -> SyncSummary:
    config = config or default_settings
    if not config.sync_enabled:
        logger.info("Sync skipped: disabled by configuration")
        return SyncSummary()
    if not config.billing_configured:
        logger.info("Sync skipped: billing platform credentials not configured")
        return SyncSummary()
    with BillingClient(config) as client:
        return run_sync(db, client, category=category, batch_size=batch_size, config=config)
