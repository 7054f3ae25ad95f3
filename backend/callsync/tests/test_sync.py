from datetime import timedelta

from callsync.core.config import Settings
from callsync.errors import BillingAPIError
from callsync.models import CallRecord, SyncLogEntry, SyncStatus, TrafficCategory
from callsync.schemas import BillingCallLeg
from callsync.services.sync import run_sync, sync_from_settings

from .conftest import CALL_TIME, TestingSessionLocal

CALLER = "+15551230001"


def _transfer(platform, caller=CALLER, prefix="L", payout=80.0):
    return platform.add_call(
        caller,
        CALL_TIME + timedelta(minutes=2),
        [
            BillingCallLeg(leg_id=f"{prefix}1", payout=payout, revenue=0.0, next_leg_ids=[f"{prefix}2"]),
            BillingCallLeg(leg_id=f"{prefix}2", connected=True, payout=0.0, revenue=payout, previous_leg_id=f"{prefix}1"),
        ],
    )


def _single(platform, caller=CALLER, leg_id="L1", payout=80.0, connected=True):
    return platform.add_call(
        caller,
        CALL_TIME + timedelta(minutes=2),
        [BillingCallLeg(leg_id=leg_id, connected=connected, payout=payout, revenue=payout)],
    )


def _logs(db, record_id):
    return db.query(SyncLogEntry).filter(SyncLogEntry.call_record_id == record_id).order_by(SyncLogEntry.id).all()


def test_transferred_call_writes_payout_and_revenue_legs(db, platform, make_record, test_settings):
    record = make_record(payout=100.0)
    _transfer(platform)

    summary = run_sync(db, platform, config=test_settings)

    assert (summary.synced, summary.skipped, summary.failed) == (1, 0, 0)
    assert [leg_id for leg_id, _ in platform.overrides] == ["L1", "L2"]
    payout_write, revenue_write = (payload for _, payload in platform.overrides)
    assert payout_write.new_payout_amount == 100.0
    assert payout_write.new_conversion_amount is None
    assert revenue_write.new_conversion_amount == 100.0
    assert revenue_write.new_payout_amount is None
    assert payout_write.reason == test_settings.override_reason

    db.refresh(record)
    assert record.sync_status == SyncStatus.SUCCESS
    assert record.platform_call_id == "L1"
    entries = _logs(db, record.id)
    assert len(entries) == 1
    assert entries[0].status == SyncStatus.SUCCESS
    assert entries[0].event == "written"
    assert entries[0].revenue == entries[0].payout == 100.0
    assert entries[0].leg_resolution["revenue_leg_id"] == "L2"


def test_nothing_due_makes_no_remote_calls(db, platform, test_settings):
    summary = run_sync(db, platform, config=test_settings)
    assert (summary.synced, summary.skipped, summary.failed) == (0, 0, 0)
    assert platform.requests == []


def test_second_pass_skips_matching_api_call(db, platform, make_record, test_settings):
    make_record(payout=100.0, category=TrafficCategory.API)
    _single(platform)

    first = run_sync(db, platform, config=test_settings)
    second = run_sync(db, platform, config=test_settings)

    assert first.synced == 1
    assert (second.synced, second.skipped, second.failed) == (0, 1, 0)
    assert platform.remote_writes == 1


def test_synced_static_row_is_not_selected_again(db, platform, make_record, test_settings):
    make_record(payout=100.0)
    _single(platform)

    run_sync(db, platform, config=test_settings)
    requests_after_first = len(platform.requests)
    second = run_sync(db, platform, config=test_settings)

    assert (second.synced, second.skipped, second.failed) == (0, 0, 0)
    assert len(platform.requests) == requests_after_first


def test_matching_payout_is_skipped_without_write(db, platform, make_record, test_settings):
    record = make_record(payout=80.004)
    _single(platform, payout=80.0)

    summary = run_sync(db, platform, config=test_settings)

    assert summary.skipped == 1
    assert platform.remote_writes == 0
    assert _logs(db, record.id)[0].event == "skipped_matches"


def test_pending_adjustment_forces_write(db, platform, make_record, test_settings):
    make_record(payout=80.0, adjustment_amount=-20.0)
    _single(platform, payout=80.0)

    summary = run_sync(db, platform, config=test_settings)

    assert summary.synced == 1
    assert platform.remote_writes == 1


def test_revenue_always_equals_payout(db, platform, make_record, test_settings):
    for index, payout in enumerate([12.5, 0.003, 55.0]):
        caller = f"+1555123000{index}"
        make_record(caller_id=caller, payout=payout)
        _transfer(platform, caller=caller, prefix=f"C{index}L")
    revenue_only = make_record(caller_id="+15551239999", revenue=33.0)
    revenue_only.payout = None
    db.commit()
    _single(platform, caller="+15551239999", leg_id="S1", payout=0.0)

    run_sync(db, platform, config=test_settings)

    written = {}
    for leg_id, payload in platform.overrides:
        if payload.new_payout_amount is not None and payload.new_conversion_amount is not None:
            assert payload.new_payout_amount == payload.new_conversion_amount
        written[leg_id] = payload
    assert written["C1L1"].new_payout_amount == 0.0
    assert written["S1"].new_payout_amount == 33.0
    for entry in db.query(SyncLogEntry).all():
        assert entry.revenue == entry.payout


def test_pending_status_committed_before_write(db, platform, make_record, test_settings):
    record = make_record(payout=100.0)
    _single(platform)
    seen = []

    def check_committed(leg_id, payload):
        with TestingSessionLocal() as other:
            row = other.get(CallRecord, record.id)
            seen.append((row.sync_status, row.platform_call_id))

    platform.on_override = check_committed
    run_sync(db, platform, config=test_settings)

    assert seen == [(SyncStatus.PENDING, "L1")]


def test_single_leg_revenue_rejection_retries_payout_only(db, platform, make_record, test_settings):
    record = make_record(payout=100.0)
    _single(platform, connected=False)

    def reject_revenue(leg_id, payload):
        if payload.new_conversion_amount is not None:
            return BillingAPIError("HTTP 400: Call not connected, revenue cannot be set", status_code=400)
        return None

    platform.reject = reject_revenue
    summary = run_sync(db, platform, config=test_settings)

    assert summary.synced == 1
    assert len(platform.overrides) == 1
    leg_id, payload = platform.overrides[0]
    assert leg_id == "L1"
    assert payload.new_payout_amount == 100.0
    assert payload.new_conversion_amount is None
    db.refresh(record)
    assert record.sync_status == SyncStatus.SUCCESS
    assert _logs(db, record.id)[0].event == "revenue_skipped"


def test_connected_leg_rejection_fails_record(db, platform, make_record, test_settings):
    record = make_record(payout=100.0)
    _single(platform, connected=True)
    platform.reject = lambda leg_id, payload: BillingAPIError("HTTP 400: revenue out of range", status_code=400)

    summary = run_sync(db, platform, config=test_settings)

    assert summary.failed == 1
    db.refresh(record)
    assert record.sync_status == SyncStatus.FAILED
    entry = _logs(db, record.id)[0]
    assert entry.error_code == "override-failed"
    assert entry.platform_call_id == "L1"


def test_revenue_leg_failure_after_payout_write(db, platform, make_record, test_settings):
    record = make_record(payout=100.0)
    _transfer(platform)
    platform.reject = lambda leg_id, payload: (
        BillingAPIError("HTTP 500: upstream error", status_code=500) if leg_id == "L2" else None
    )

    summary = run_sync(db, platform, config=test_settings)

    assert summary.failed == 1
    assert [leg_id for leg_id, _ in platform.overrides] == ["L1"]
    db.refresh(record)
    assert record.sync_status == SyncStatus.FAILED


def test_retry_after_partial_write_finishes_revenue_leg(db, platform, make_record, test_settings):
    record = make_record(payout=100.0)
    _transfer(platform)
    platform.reject = lambda leg_id, payload: (
        BillingAPIError("HTTP 500: upstream error", status_code=500) if leg_id == "L2" else None
    )
    run_sync(db, platform, config=test_settings)

    platform.reject = None
    retry = run_sync(db, platform, config=test_settings)

    assert (retry.synced, retry.skipped, retry.failed) == (1, 0, 0)
    assert platform.legs["L1"].payout == 100.0
    assert platform.legs["L2"].revenue == 100.0
    db.refresh(record)
    assert record.sync_status == SyncStatus.SUCCESS
    assert _logs(db, record.id)[-1].event == "written"


def test_anonymous_caller_cannot_sync(db, platform, make_record, test_settings):
    record = make_record(caller_id="Anonymous")

    summary = run_sync(db, platform, config=test_settings)

    assert summary.failed == 1
    assert summary.by_status == {"cannot_sync": 1}
    assert platform.requests == []
    db.refresh(record)
    assert record.sync_status == SyncStatus.CANNOT_SYNC
    assert _logs(db, record.id)[0].error_code == "invalid-caller-id"
    assert run_sync(db, platform, config=test_settings).failed == 0


def test_missing_platform_call_is_not_found(db, platform, make_record, test_settings):
    record = make_record()

    summary = run_sync(db, platform, config=test_settings)

    assert summary.by_status == {"not_found": 1}
    db.refresh(record)
    assert record.sync_status == SyncStatus.NOT_FOUND
    assert _logs(db, record.id)[0].event == "not_found"
    assert ("get_leg_chain", "L1") not in platform.requests


def test_lookup_error_marks_failed_and_is_retried(db, platform, make_record, test_settings):
    record = make_record()
    _single(platform)
    platform.lookup_error = BillingAPIError("HTTP 503: unavailable", status_code=503)

    first = run_sync(db, platform, config=test_settings)
    db.refresh(record)
    assert first.failed == 1
    assert record.sync_status == SyncStatus.FAILED
    assert _logs(db, record.id)[0].error_code == "lookup-failed"

    platform.lookup_error = None
    second = run_sync(db, platform, config=test_settings)
    assert second.synced == 1


def test_leg_cycle_fails_without_writes(db, platform, make_record, test_settings):
    record = make_record()
    platform.add_call(
        CALLER,
        CALL_TIME,
        [
            BillingCallLeg(leg_id="L1", next_leg_ids=["L2"]),
            BillingCallLeg(leg_id="L2", connected=True, next_leg_ids=["L1"]),
        ],
    )

    summary = run_sync(db, platform, config=test_settings)

    assert summary.failed == 1
    assert platform.remote_writes == 0
    db.refresh(record)
    assert record.sync_status == SyncStatus.FAILED
    assert record.platform_call_id == "L1"
    assert _logs(db, record.id)[0].error_code == "leg-resolution-failed"


def test_unexpected_error_does_not_stop_batch(db, platform, make_record, test_settings):
    callers = ["+15551230001", "+15551230002", "+15551230003"]
    for index, caller in enumerate(callers):
        make_record(caller_id=caller, payout=100.0)
        _single(platform, caller=caller, leg_id=f"L{index}")

    def explode(leg_id, payload):
        if leg_id == "L1":
            raise RuntimeError("connection reset")

    platform.on_override = explode
    summary = run_sync(db, platform, config=test_settings)

    assert (summary.synced, summary.failed) == (2, 1)
    statuses = {row.caller_id: row.sync_status for row in db.query(CallRecord).all()}
    assert statuses["+15551230002"] == SyncStatus.FAILED
    assert statuses["+15551230001"] == SyncStatus.SUCCESS
    assert statuses["+15551230003"] == SyncStatus.SUCCESS


def test_pacing_between_records(db, platform, make_record, test_settings):
    for index in range(3):
        make_record(caller_id=f"+1555123000{index}")
    pauses = []

    run_sync(db, platform, pacing_seconds=0.5, config=test_settings, sleep=pauses.append)

    assert pauses == [0.5, 0.5]


def test_sync_from_settings_requires_credentials(db, make_record):
    make_record()
    summary = sync_from_settings(db, config=Settings(billing_account_id="", billing_api_token=""))
    assert (summary.synced, summary.skipped, summary.failed) == (0, 0, 0)

    disabled = Settings(billing_account_id="acct", billing_api_token="token", sync_enabled=False)
    assert sync_from_settings(db, config=disabled).failed == 0
    assert db.query(SyncLogEntry).count() == 0
