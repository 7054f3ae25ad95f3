from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from callsync.models.call_record import SyncStatus, TrafficCategory


def parse_platform_datetime(value: object) -> Optional[datetime]:
    """Platform timestamps come back as epoch milliseconds or ISO strings; store naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.isdigit():
            parsed = datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
        else:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class PlatformCall(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    inbound_call_id: str = Field(alias="inboundCallId")
    call_time: Optional[datetime] = Field(default=None, alias="callDt")
    caller_id: Optional[str] = Field(default=None, alias="callerId")
    payout: Optional[float] = Field(default=None, alias="payoutAmount")
    revenue: Optional[float] = Field(default=None, alias="conversionAmount")
    connected: bool = Field(default=False, alias="hasConnected")

    @field_validator("call_time", mode="before")
    def parse_call_time(cls, value: object) -> Optional[datetime]:
        return parse_platform_datetime(value)


class BillingCallLeg(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    leg_id: str = Field(alias="inboundCallId")
    connected: bool = Field(default=False, alias="hasConnected")
    revenue: Optional[float] = Field(default=None, alias="conversionAmount")
    payout: Optional[float] = Field(default=None, alias="payoutAmount")
    previous_leg_id: Optional[str] = Field(default=None, alias="previousInboundCallId")
    next_leg_ids: List[str] = Field(default_factory=list, alias="nextInboundCallIds")

    @field_validator("next_leg_ids", mode="before")
    def drop_empty_links(cls, value: object) -> List[str]:
        if not value:
            return []
        return [str(item) for item in value if item]

    @property
    def links(self) -> List[str]:
        linked = list(self.next_leg_ids)
        if self.previous_leg_id:
            linked.insert(0, self.previous_leg_id)
        return linked


class OverridePayload(BaseModel):
    reason: str
    new_payout_amount: Optional[float] = None
    new_conversion_amount: Optional[float] = None

    def to_request(self, leg_id: str) -> Dict[str, object]:
        body: Dict[str, object] = {"inboundCallId": leg_id, "reason": self.reason}
        if self.new_payout_amount is not None:
            body["newPayoutAmount"] = self.new_payout_amount
        if self.new_conversion_amount is not None:
            body["newConversionAmount"] = self.new_conversion_amount
        return body


class AdjustmentIn(BaseModel):
    call_sid: str = Field(min_length=1, max_length=128)
    call_time: datetime
    adjustment_time: datetime
    caller_id: str
    campaign_phone: str = ""
    amount: float
    classification: Optional[str] = None
    duration: int = 0

    @field_validator("call_time", "adjustment_time", mode="before")
    def parse_times(cls, value: object) -> Optional[datetime]:
        return parse_platform_datetime(value)


class MergeResult(BaseModel):
    stored: int = 0
    skipped_duplicates: int = 0
    matched: int = 0
    unmatched_inserted: int = 0


class SyncSummary(BaseModel):
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)


class SyncLogOut(BaseModel):
    id: int
    call_record_id: int
    caller_id: Optional[str]
    call_time: Optional[datetime]
    category: Optional[TrafficCategory]
    adjustment_amount: Optional[float]
    platform_call_id: Optional[str]
    status: SyncStatus
    event: str
    revenue: Optional[float]
    payout: Optional[float]
    error_code: Optional[str]
    error_message: Optional[str]
    attempted_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class PaginatedSyncLogs(BaseModel):
    items: List[SyncLogOut]
    total: int
    page: int
    page_size: int
