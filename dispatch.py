"""
Dispatcher assignment selection.

Pure functions over workload snapshots supplied by the caller; nothing here
touches the database. The caller persists the chosen dispatcher.
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

NO_DISPATCHERS = "No dispatchers available"


@dataclass(frozen=True)
class DispatcherWorkload:
    dispatcher_id: str
    pending_orders: int = 0
    total_orders: int = 0

    def to_dict(self) -> dict:
        return {
            "dispatcherId": self.dispatcher_id,
            "pendingOrders": self.pending_orders,
            "totalOrders": self.total_orders,
        }


@dataclass(frozen=True)
class AssignmentResult:
    dispatcher_id: str
    is_assigned: bool
    reason: str
    method: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "dispatcherId": self.dispatcher_id,
            "isAssigned": self.is_assigned,
            "reason": self.reason,
            "method": self.method,
        }


def rank_dispatchers(workloads: Iterable[DispatcherWorkload]) -> List[DispatcherWorkload]:
    """Least loaded first: pending orders, then total orders. Stable on ties."""
    return sorted(workloads, key=lambda w: (w.pending_orders, w.total_orders))


def find_best_dispatcher(workloads: Sequence[DispatcherWorkload]) -> AssignmentResult:
    if not workloads:
        return AssignmentResult(dispatcher_id="", is_assigned=False, reason=NO_DISPATCHERS)
    best = rank_dispatchers(workloads)[0]
    return AssignmentResult(
        dispatcher_id=best.dispatcher_id,
        is_assigned=True,
        reason=f"Assigned to dispatcher with {best.pending_orders} pending orders",
        method="workload",
    )


def pick_random_dispatcher(dispatcher_ids: Sequence[str], rng: Optional[random.Random] = None) -> AssignmentResult:
    """Fallback when workloads could not be computed."""
    if not dispatcher_ids:
        return AssignmentResult(dispatcher_id="", is_assigned=False, reason=NO_DISPATCHERS)
    chooser = rng or random
    return AssignmentResult(
        dispatcher_id=chooser.choice(list(dispatcher_ids)),
        is_assigned=True,
        reason="Randomly assigned",
        method="random",
    )
