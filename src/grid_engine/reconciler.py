"""
Reconciliation Engine

Diffs the desired ladder against the tracker snapshot and produces an
ordered ``ActionPlan``:

* every ladder level with no live order bound to it gets a ``Place``;
* live orders bound to a level that no longer exists (an older ladder
  generation, or no level at all) get a ``Cancel``;
* orders on a current level whose price or size drifted past tolerance get
  an ``Amend`` when that is safe (unfilled, OPEN, acknowledged, amends
  allowed) and a ``Cancel`` otherwise;
* partially filled orders are left on their level until a recenter, and
  an order the risk guard capped below its level size is not replaced just
  to be capped again;
* all cancels and amends come before any place.

Orders already in motion (CANCELLING, a pending cancel/amend request, or a
place that has not been acknowledged yet) are left alone but keep their
level occupied, so re-running ``reconcile`` on a snapshot that already
reflects the previous plan yields an empty plan.

Pure function of its inputs; no I/O.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Set

from .config import GridSettings
from .order_tracker import TrackerSnapshot
from .types import (
    Action,
    ActionPlan,
    Amend,
    Cancel,
    GridLevel,
    Ladder,
    LevelKey,
    ManagedOrder,
    OrderStatus,
    Place,
)

logger = logging.getLogger(__name__)

_BPS = Decimal("10000")
_PCT = Decimal("100")


@dataclass(frozen=True)
class ReconcilePolicy:
    price_tolerance_bps: Decimal = Decimal("0")
    size_tolerance_pct: Decimal = Decimal("0")
    allow_amend: bool = True

    @classmethod
    def from_settings(cls, settings: GridSettings, *, supports_amend: bool = True) -> "ReconcilePolicy":
        return cls(
            price_tolerance_bps=settings.price_tolerance_bps,
            size_tolerance_pct=settings.size_tolerance_pct,
            allow_amend=bool(settings.amend_enabled and supports_amend),
        )


def _in_flight(order: ManagedOrder) -> bool:
    if order.status is OrderStatus.CANCELLING or order.pending_action is not None:
        return True
    return order.status is OrderStatus.PENDING and order.exchange_order_id is None


def price_drifted(order: ManagedOrder, level: GridLevel, tolerance_bps: Decimal) -> bool:
    if order.price == level.price:
        return False
    return abs(order.price - level.price) / level.price * _BPS > tolerance_bps


def size_drifted(order: ManagedOrder, level: GridLevel, tolerance_pct: Decimal) -> bool:
    if order.size == level.target_size:
        return False
    return abs(order.size - level.target_size) / level.target_size * _PCT > tolerance_pct


def _can_amend(order: ManagedOrder, policy: ReconcilePolicy) -> bool:
    return (
        policy.allow_amend
        and order.status is OrderStatus.OPEN
        and order.filled_size == 0
        and order.exchange_order_id is not None
    )


def _held_below_target(order: ManagedOrder, level: GridLevel, policy: ReconcilePolicy) -> bool:
    """A risk-capped order short of its level size that cannot be grown in place.

    Replacing it would only be capped again, so it counts as filling its level.
    """
    return (
        order.size_capped
        and order.size < level.target_size
        and not _can_amend(order, policy)
    )


def reconcile(
    ladder: Optional[Ladder],
    snapshot: TrackerSnapshot,
    policy: ReconcilePolicy,
) -> ActionPlan:
    """Compute the actions that converge the orders in *snapshot* onto *ladder*.

    With no ladder (no usable reference price yet) nothing is placed and
    no bound order is considered stale; only orphans are cancelled.
    """
    targets: Dict[LevelKey, GridLevel] = ladder.by_key() if ladder is not None else {}
    occupied: Set[LevelKey] = set()
    modify: List[Action] = []

    for order in snapshot.orders:
        if order.is_terminal:
            continue
        key = order.level_key

        if _in_flight(order):
            if key is not None:
                occupied.add(key)
            continue

        if key is None:
            modify.append(Cancel(order, reason="orphan"))
            continue

        level = targets.get(key)
        if level is None:
            if ladder is not None:
                modify.append(Cancel(order, reason="stale_level"))
            continue

        if key in occupied:
            modify.append(Cancel(order, reason="duplicate_level"))
            continue
        occupied.add(key)

        # Partially filled orders keep their level until the ladder recenters.
        if order.status is OrderStatus.PARTIALLY_FILLED:
            continue

        reprice = price_drifted(order, level, policy.price_tolerance_bps)
        resize = size_drifted(order, level, policy.size_tolerance_pct)
        if resize and _held_below_target(order, level, policy):
            resize = False
        if not (reprice or resize):
            continue

        if _can_amend(order, policy):
            modify.append(Amend(
                order,
                new_price=level.price if reprice else None,
                new_size=level.target_size if resize else None,
            ))
        else:
            modify.append(Cancel(order, reason="drift"))

    places: List[Action] = []
    if ladder is not None:
        for level in ladder.levels:
            if level.key not in occupied:
                places.append(Place(level))

    plan: ActionPlan = tuple(modify) + tuple(places)
    if plan:
        logger.debug("Reconcile plan: %s", summarize(plan))
    return plan


def summarize(plan: ActionPlan) -> Dict[str, int]:
    counts = {"place": 0, "cancel": 0, "amend": 0}
    for action in plan:
        if isinstance(action, Place):
            counts["place"] += 1
        elif isinstance(action, Cancel):
            counts["cancel"] += 1
        elif isinstance(action, Amend):
            counts["amend"] += 1
    return counts
