from sqlalchemy import event

from callsync.errors import AppendOnlyViolation
from callsync.models.call_record import CallRecord, SyncStatus, TrafficCategory, truncate_to_minute
from callsync.models.adjustment_record import AdjustmentRecord
from callsync.models.sync_log import SyncLogEntry

__all__ = [
    "CallRecord",
    "SyncStatus",
    "TrafficCategory",
    "truncate_to_minute",
    "AdjustmentRecord",
    "SyncLogEntry",
]


def _reject_change(mapper, connection, target) -> None:
    raise AppendOnlyViolation(f"{type(target).__name__} rows are append-only")


for _model in (AdjustmentRecord, SyncLogEntry):
    event.listen(_model, "before_update", _reject_change)
    event.listen(_model, "before_delete", _reject_change)
