import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import validates

from callsync.core.database import Base


class TrafficCategory(str, enum.Enum):
    STATIC = "STATIC"
    API = "API"


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    CANNOT_SYNC = "cannot_sync"
    FAILED = "failed"


def truncate_to_minute(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(second=0, microsecond=0)


class CallRecord(Base):
    __tablename__ = "call_records"
    __table_args__ = (
        UniqueConstraint("caller_id", "call_minute", "campaign_phone", name="uq_call_records_identity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    call_time = Column(DateTime, nullable=False, index=True)
    call_minute = Column(DateTime, nullable=False)
    caller_id = Column(String(64), nullable=False, index=True)
    campaign_phone = Column(String(64), nullable=False, default="")
    payout = Column(Float, nullable=True, default=0.0)
    revenue = Column(Float, nullable=True)
    category = Column(Enum(TrafficCategory), nullable=False, default=TrafficCategory.STATIC, index=True)

    adjustment_time = Column(DateTime, nullable=True)
    adjustment_amount = Column(Float, nullable=True)
    adjustment_classification = Column(String(64), nullable=True)
    adjustment_duration = Column(Integer, nullable=True)
    unmatched = Column(Boolean, default=False, nullable=False)

    platform_call_id = Column(String(128), nullable=True, index=True)
    sync_status = Column(Enum(SyncStatus), nullable=False, default=SyncStatus.PENDING, index=True)
    sync_at = Column(DateTime, nullable=True)
    sync_response = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @validates("call_time")
    def _sync_call_minute(self, key, value):
        self.call_minute = truncate_to_minute(value)
        return value

    def identity_key(self) -> tuple:
        return (self.caller_id, truncate_to_minute(self.call_time), self.campaign_phone or "")
