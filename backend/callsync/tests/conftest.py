import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from collections import deque
from datetime import datetime
from typing import Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from callsync.core import database
from callsync.core.config import Settings
from callsync.core.database import Base
from callsync.errors import BillingAPIError
from callsync.main import app
from callsync.models import CallRecord, SyncStatus, TrafficCategory
from callsync.schemas import BillingCallLeg, OverridePayload, PlatformCall
from callsync.services.matching import normalize_caller_id, resolve_platform_call

engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CALL_TIME = datetime(2026, 10, 19, 14, 0)


class FakePlatformClient:
    """In-memory billing platform that records every remote call."""

    def __init__(self) -> None:
        self.calls: List[PlatformCall] = []
        self.legs: Dict[str, BillingCallLeg] = {}
        self.requests: List[tuple] = []
        self.overrides: List[tuple] = []
        self.lookup_error: Optional[Exception] = None
        self.chain_error: Optional[Exception] = None
        self.reject: Optional[Callable[[str, OverridePayload], Optional[BillingAPIError]]] = None
        self.on_override: Optional[Callable[[str, OverridePayload], None]] = None

    def add_call(self, caller_id: str, call_time: datetime, legs: List[BillingCallLeg]) -> PlatformCall:
        origin = legs[0]
        call = PlatformCall(
            inbound_call_id=origin.leg_id,
            call_time=call_time,
            caller_id=caller_id,
            payout=origin.payout,
            revenue=origin.revenue,
            connected=origin.connected,
        )
        self.calls.append(call)
        for leg in legs:
            self.legs[leg.leg_id] = leg
        return call

    @property
    def remote_writes(self) -> int:
        return len(self.overrides)

    def lookup_call(self, caller_id, approx_time, window_minutes, expected_payout=None, known_call_id=None):
        self.requests.append(("lookup_call", caller_id))
        if self.lookup_error:
            raise self.lookup_error
        normalized = normalize_caller_id(caller_id)
        candidates = []
        for call in self.calls:
            if normalize_caller_id(call.caller_id) != normalized:
                continue
            leg = self.legs.get(call.inbound_call_id)
            if leg is not None:
                call = call.model_copy(update={"payout": leg.payout, "revenue": leg.revenue})
            candidates.append(call)
        return resolve_platform_call(approx_time, candidates, window_minutes, expected_payout, known_call_id)

    def get_leg_chain(self, call_id):
        self.requests.append(("get_leg_chain", call_id))
        if self.chain_error:
            raise self.chain_error
        chain = []
        seen = {call_id}
        pending = deque([call_id])
        while pending:
            leg_id = pending.popleft()
            if leg_id not in self.legs:
                raise BillingAPIError(f"Unknown leg {leg_id}", status_code=404)
            leg = self.legs[leg_id]
            chain.append(leg)
            for linked in leg.links:
                if linked not in seen:
                    seen.add(linked)
                    pending.append(linked)
        return chain

    def override_payment(self, leg_id, payload):
        self.requests.append(("override_payment", leg_id))
        if self.on_override:
            self.on_override(leg_id, payload)
        if self.reject:
            error = self.reject(leg_id, payload)
            if error is not None:
                raise error
        self.overrides.append((leg_id, payload))
        update = {}
        if payload.new_payout_amount is not None:
            update["payout"] = payload.new_payout_amount
        if payload.new_conversion_amount is not None:
            update["revenue"] = payload.new_conversion_amount
        self.legs[leg_id] = self.legs[leg_id].model_copy(update=update)
        return {"isSuccessful": True, "inboundCallId": leg_id}


@pytest.fixture()
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def platform():
    return FakePlatformClient()


@pytest.fixture()
def test_settings():
    return Settings(
        billing_account_id="acct-1",
        billing_api_token="token-1",
        sync_pacing_seconds=0,
        lookup_window_minutes=60,
        adjustment_window_minutes=30,
    )


@pytest.fixture()
def make_record(db):
    def _make(
        caller_id: str = "+15551230001",
        call_time: datetime = CALL_TIME,
        payout: Optional[float] = 100.0,
        category: TrafficCategory = TrafficCategory.STATIC,
        **fields,
    ) -> CallRecord:
        fields.setdefault("campaign_phone", "+18005550100")
        fields.setdefault("sync_status", SyncStatus.PENDING)
        record = CallRecord(caller_id=caller_id, call_time=call_time, payout=payout, category=category, **fields)
        db.add(record)
        db.commit()
        db.refresh(record)
        return record

    return _make


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(db):
    app.dependency_overrides[database.get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
