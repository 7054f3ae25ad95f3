from datetime import datetime

from sqlalchemy import Column, DateTime, Enum, Float, ForeignKey, Integer, JSON, String, Text

from callsync.core.database import Base
from callsync.models.call_record import SyncStatus, TrafficCategory


class SyncLogEntry(Base):
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    call_record_id = Column(Integer, ForeignKey("call_records.id"), nullable=False, index=True)
    caller_id = Column(String(64), nullable=True, index=True)
    call_time = Column(DateTime, nullable=True)
    category = Column(Enum(TrafficCategory), nullable=True)
    adjustment_amount = Column(Float, nullable=True)
    adjustment_classification = Column(String(64), nullable=True)
    platform_call_id = Column(String(128), nullable=True, index=True)
    status = Column(Enum(SyncStatus), nullable=False, index=True)
    event = Column(String(32), nullable=False)
    revenue = Column(Float, nullable=True)
    payout = Column(Float, nullable=True)
    lookup_result = Column(JSON, nullable=True)
    leg_resolution = Column(JSON, nullable=True)
    api_request = Column(JSON, nullable=True)
    api_response = Column(JSON, nullable=True)
    error_code = Column(String(32), nullable=True)
    error_message = Column(Text, nullable=True)
    attempted_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)
