from datetime import datetime

from sqlalchemy import Column, DateTime, Float, Integer, String

from callsync.core.database import Base


class AdjustmentRecord(Base):
    __tablename__ = "adjustment_records"

    id = Column(Integer, primary_key=True, index=True)
    call_sid = Column(String(128), nullable=False, unique=True)
    call_time = Column(DateTime, nullable=False, index=True)
    adjustment_time = Column(DateTime, nullable=False)
    caller_id = Column(String(64), nullable=False, index=True)
    campaign_phone = Column(String(64), nullable=False, default="")
    amount = Column(Float, nullable=False)
    classification = Column(String(64), nullable=True)
    duration = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
