"""Soft-key identity matching between local call rows and billing platform calls.

Neither side shares a primary key with the other, so identity is resolved from
the caller id plus time proximity, with payout equality as a tie breaker.
"""
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, Iterable, List, Optional, Sequence, TypeVar

from callsync.schemas import PlatformCall

T = TypeVar("T")

PAYOUT_TOLERANCE = 0.01

TIER_KNOWN_ID = "known_id"
TIER_TIME_WINDOW = "time_window"
TIER_SAME_DAY = "same_day"


@dataclass(frozen=True)
class Match(Generic[T]):
    candidate: T
    delta_minutes: float


@dataclass(frozen=True)
class LookupCandidate:
    call_id: str
    call_time: Optional[datetime]
    payout: Optional[float]
    revenue: Optional[float]
    tier: str
    delta_minutes: Optional[float]
    payout_match: Optional[bool]

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "call_time": self.call_time.isoformat() if self.call_time else None,
            "payout": self.payout,
            "revenue": self.revenue,
            "tier": self.tier,
            "delta_minutes": self.delta_minutes,
            "payout_match": self.payout_match,
        }


def normalize_caller_id(value: Optional[str]) -> Optional[str]:
    """Return the caller id in E.164 form, or None when it has no usable digits."""
    if not value:
        return None
    digits = re.sub(r"\D", "", value)
    if not digits:
        return None
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def same_calendar_day(first: datetime, second: datetime) -> bool:
    return first.date() == second.date()


def minutes_between(first: datetime, second: datetime) -> float:
    return abs((first - second).total_seconds()) / 60.0


def payout_matches(actual: Optional[float], expected: Optional[float]) -> bool:
    if actual is None or expected is None:
        return False
    return abs(float(actual) - float(expected)) < PAYOUT_TOLERANCE


def select_nearest(
    query_time: Optional[datetime],
    candidates: Iterable[T],
    window_minutes: float,
    *,
    time_of: Callable[[T], Optional[datetime]],
    id_of: Callable[[T], Any],
    prefer: Optional[Callable[[T], bool]] = None,
) -> Optional[Match[T]]:
    """Pick the same-day candidate closest to ``query_time`` within the window.

    The window is inclusive. Ties on the time delta go to ``prefer`` when given
    and then to the lowest id, so the result only depends on the candidate set.
    """
    if query_time is None:
        return None
    in_window: List[tuple] = []
    for candidate in candidates:
        candidate_time = time_of(candidate)
        if candidate_time is None or not same_calendar_day(candidate_time, query_time):
            continue
        delta = minutes_between(candidate_time, query_time)
        if delta > window_minutes:
            continue
        preferred = 0 if prefer is not None and prefer(candidate) else 1
        in_window.append((delta, preferred, id_of(candidate), candidate))
    if not in_window:
        return None
    delta, _, _, best = min(in_window, key=lambda item: item[:3])
    return Match(candidate=best, delta_minutes=delta)


def _to_lookup(call: PlatformCall, tier: str, query_time: datetime, expected_payout: Optional[float]) -> LookupCandidate:
    delta = minutes_between(call.call_time, query_time) if call.call_time else None
    return LookupCandidate(
        call_id=call.inbound_call_id,
        call_time=call.call_time,
        payout=call.payout,
        revenue=call.revenue,
        tier=tier,
        delta_minutes=round(delta, 2) if delta is not None else None,
        payout_match=payout_matches(call.payout, expected_payout) if expected_payout is not None else None,
    )


def resolve_platform_call(
    query_time: Optional[datetime],
    candidates: Sequence[PlatformCall],
    window_minutes: float,
    expected_payout: Optional[float] = None,
    known_call_id: Optional[str] = None,
) -> Optional[LookupCandidate]:
    """Resolve a local call to one platform call, trying each tier in order.

    1. the platform call id recorded on a previous pass
    2. same caller inside the time window, payout equality breaking delta ties
    3. same caller on the same calendar day, exact payout preferred
    """
    if not candidates or query_time is None:
        return None

    if known_call_id:
        for call in candidates:
            if call.inbound_call_id == known_call_id:
                return _to_lookup(call, TIER_KNOWN_ID, query_time, expected_payout)

    def matches_expected(call: PlatformCall) -> bool:
        return payout_matches(call.payout, expected_payout)

    windowed = select_nearest(
        query_time,
        candidates,
        window_minutes,
        time_of=lambda call: call.call_time,
        id_of=lambda call: call.inbound_call_id,
        prefer=matches_expected if expected_payout is not None else None,
    )
    if windowed is not None:
        return _to_lookup(windowed.candidate, TIER_TIME_WINDOW, query_time, expected_payout)

    same_day = [
        call
        for call in candidates
        if call.call_time is not None and same_calendar_day(call.call_time, query_time)
    ]
    if not same_day:
        return None
    best = min(
        same_day,
        key=lambda call: (
            0 if expected_payout is not None and matches_expected(call) else 1,
            minutes_between(call.call_time, query_time),
            call.inbound_call_id,
        ),
    )
    return _to_lookup(best, TIER_SAME_DAY, query_time, expected_payout)
