from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from callsync.errors import LegResolutionError
from callsync.schemas import BillingCallLeg


@dataclass(frozen=True)
class LegResolution:
    payout_leg_id: str
    revenue_leg_id: str
    payout_leg: BillingCallLeg
    revenue_leg: BillingCallLeg
    is_multi_leg: bool
    chain: List[str]

    @property
    def is_same_leg(self) -> bool:
        return self.payout_leg_id == self.revenue_leg_id

    def to_dict(self) -> dict:
        return {
            "payout_leg_id": self.payout_leg_id,
            "revenue_leg_id": self.revenue_leg_id,
            "is_multi_leg": self.is_multi_leg,
            "is_connected": self.revenue_leg.connected,
            "chain": list(self.chain),
        }


def _incoming_edges(legs: Dict[str, BillingCallLeg]) -> Dict[str, set]:
    incoming: Dict[str, set] = {leg_id: set() for leg_id in legs}
    for leg in legs.values():
        if leg.previous_leg_id and leg.previous_leg_id in legs:
            incoming[leg.leg_id].add(leg.previous_leg_id)
        for child in leg.next_leg_ids:
            if child in legs:
                incoming[child].add(leg.leg_id)
    return incoming


def _children(leg: BillingCallLeg, legs: Dict[str, BillingCallLeg], incoming: Dict[str, set]) -> List[str]:
    children = [child for child in leg.next_leg_ids if child in legs]
    # A link declared only on the child side (previous_leg_id) still counts.
    for leg_id in sorted(legs):
        if leg.leg_id in incoming[leg_id] and leg_id not in children:
            children.append(leg_id)
    return children


def _walk_chain(origin: str, legs: Dict[str, BillingCallLeg], incoming: Dict[str, set]) -> List[str]:
    order: List[str] = []
    finished: set = set()
    on_path: set = set()
    stack: List[tuple] = [(origin, iter(_children(legs[origin], legs, incoming)))]
    on_path.add(origin)
    order.append(origin)
    while stack:
        leg_id, children = stack[-1]
        child = next(children, None)
        if child is None:
            stack.pop()
            on_path.discard(leg_id)
            finished.add(leg_id)
            continue
        if child in on_path:
            raise LegResolutionError(f"Cycle detected in leg chain at {leg_id} -> {child}")
        if child in finished:
            continue
        on_path.add(child)
        order.append(child)
        stack.append((child, iter(_children(legs[child], legs, incoming))))
    return order


def resolve_legs(start_leg_id: str, chain: Iterable[BillingCallLeg]) -> LegResolution:
    """Pick the legs that own payout and revenue for a possibly transferred call.

    The originating leg owns the payout. The connected leg owns the revenue; when
    several legs connected the last one in chain order wins, and when none did
    the origin is used so the combined write is still attempted.
    """
    legs: Dict[str, BillingCallLeg] = {}
    for leg in chain:
        legs.setdefault(leg.leg_id, leg)
    if start_leg_id not in legs:
        raise LegResolutionError(f"Starting leg {start_leg_id} missing from chain")

    incoming = _incoming_edges(legs)
    origins = [leg_id for leg_id, parents in incoming.items() if not parents]
    if not origins:
        raise LegResolutionError(f"Cycle detected in leg chain of {start_leg_id}: no originating leg")
    if len(origins) > 1:
        raise LegResolutionError(
            f"Ambiguous leg chain of {start_leg_id}: {len(origins)} originating legs ({', '.join(sorted(origins))})"
        )
    origin = origins[0]
    order = _walk_chain(origin, legs, incoming)
    if len(order) != len(legs):
        unreachable = sorted(set(legs) - set(order))
        raise LegResolutionError(
            f"Leg chain of {start_leg_id} is not connected to its origin: {', '.join(unreachable)}"
        )

    revenue_leg_id: Optional[str] = None
    for leg_id in order:
        if legs[leg_id].connected:
            revenue_leg_id = leg_id
    if revenue_leg_id is None:
        revenue_leg_id = origin

    return LegResolution(
        payout_leg_id=origin,
        revenue_leg_id=revenue_leg_id,
        payout_leg=legs[origin],
        revenue_leg=legs[revenue_leg_id],
        is_multi_leg=len(order) > 1,
        chain=order,
    )
