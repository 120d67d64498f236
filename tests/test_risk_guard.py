from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import make_settings
from grid_engine.errors import RiskHalt
from grid_engine.ladder import PriceLadder
from grid_engine.order_tracker import OrderStateTracker, TrackerSnapshot
from grid_engine.reconciler import ReconcilePolicy, reconcile
from grid_engine.risk_guard import RiskGuard
from grid_engine.types import (
    Amend,
    Cancel,
    EventKind,
    ExchangeSnapshot,
    ExecutionEvent,
    ManagedOrder,
    Place,
    Position,
    Side,
)


def _plan_for(settings, tracker):
    ladder = PriceLadder(settings)
    ladder.build(settings.center_price)
    return reconcile(ladder.current, tracker.snapshot(), ReconcilePolicy())


def _tracker_with_position(net: str) -> OrderStateTracker:
    tracker = OrderStateTracker()
    tracker.resync(ExchangeSnapshot(position=Position(net_size=Decimal(net), average_entry_price=Decimal("100"))))
    return tracker


def _pnl_snapshot(realized: str) -> TrackerSnapshot:
    return TrackerSnapshot(orders=(), position=Position(realized_pnl=Decimal(realized)), version=0)


def _rest(tracker, cid, side, size, price="99", level=None) -> ManagedOrder:
    tracker.track_new(ManagedOrder(
        cid, side, Decimal(price), Decimal(size),
        level_index=level, generation=None if level is None else 0,
    ))
    tracker.apply(ExecutionEvent(kind=EventKind.ACK, client_order_id=cid, exchange_order_id=f"x-{cid}"))
    return tracker.get(cid)


# ---------------------------------------------------------------------------
# Exposure limits
# ---------------------------------------------------------------------------

def test_place_pushing_position_past_limit_is_dropped_others_kept():
    settings = make_settings(max_net_position=Decimal("1.0"), level_size=Decimal("0.5"), levels_per_side=1)
    tracker = _tracker_with_position("1.0")
    plan = _plan_for(settings, tracker)
    assert len(plan) == 2

    filtered = RiskGuard(settings).filter(plan, tracker.snapshot())

    assert len(filtered) == 1
    assert filtered[0].level.side is Side.SELL


def test_place_is_shrunk_to_remaining_headroom():
    settings = make_settings(max_net_position=Decimal("1.0"), level_size=Decimal("0.5"), levels_per_side=1)
    tracker = _tracker_with_position("0.7")
    plan = _plan_for(settings, tracker)

    filtered = RiskGuard(settings).filter(plan, tracker.snapshot())

    buy = [a for a in filtered if a.level.side is Side.BUY]
    assert len(buy) == 1
    assert buy[0].level.target_size == Decimal("0.3")
    assert buy[0].level.level_index == 0


def test_worst_case_counts_resting_orders_and_admitted_places():
    settings = make_settings(max_net_position=Decimal("2.5"), level_size=Decimal("1"), levels_per_side=3)
    tracker = OrderStateTracker()
    plan = _plan_for(settings, tracker)

    filtered = RiskGuard(settings).filter(plan, tracker.snapshot())

    buy_sizes = [a.level.target_size for a in filtered if a.level.side is Side.BUY]
    sell_sizes = [a.level.target_size for a in filtered if a.level.side is Side.SELL]
    assert buy_sizes == [Decimal("1"), Decimal("1"), Decimal("0.5")]
    assert sell_sizes == buy_sizes


def test_orders_cancelled_by_the_plan_free_exposure():
    settings = make_settings(max_net_position=Decimal("1"), level_size=Decimal("1"), levels_per_side=1)
    tracker = OrderStateTracker()
    _rest(tracker, "old", Side.BUY, "1", price="80")
    plan = _plan_for(settings, tracker)
    assert isinstance(plan[0], Cancel)

    filtered = RiskGuard(settings).filter(plan, tracker.snapshot())

    assert isinstance(filtered[0], Cancel)
    assert any(isinstance(a, Place) and a.level.side is Side.BUY for a in filtered)


def test_size_increasing_amend_over_limit_is_dropped():
    settings = make_settings(max_net_position=Decimal("1.5"))
    tracker = OrderStateTracker()
    order = _rest(tracker, "b0", Side.BUY, "1")
    plan = (
        Amend(order, new_size=Decimal("2")),
        Amend(order, new_price=Decimal("98.5")),
    )

    filtered = RiskGuard(settings).filter(plan, tracker.snapshot())

    assert filtered == (plan[1],)


def test_max_open_orders_caps_places():
    settings = make_settings(max_open_orders=4)
    tracker = OrderStateTracker()
    _rest(tracker, "b0", Side.BUY, "1", level=0)
    plan = _plan_for(settings, tracker)
    assert len(plan) == 5

    filtered = RiskGuard(settings).filter(plan, tracker.snapshot())

    assert sum(isinstance(a, Place) for a in filtered) == 3


# ---------------------------------------------------------------------------
# Kill switches
# ---------------------------------------------------------------------------

def test_realized_loss_kill_switch_latches_until_cleared():
    guard = RiskGuard(make_settings(max_realized_loss=Decimal("5")))

    guard.filter((), _pnl_snapshot("-4"))
    with pytest.raises(RiskHalt):
        guard.filter((), _pnl_snapshot("-5"))
    assert guard.halted is True

    # Still halted after the loss recovers.
    with pytest.raises(RiskHalt):
        guard.filter((), _pnl_snapshot("0"))

    guard.clear()
    assert guard.halted is False
    assert guard.filter((), _pnl_snapshot("0")) == ()


def test_drawdown_kill_switch():
    guard = RiskGuard(make_settings(max_drawdown=Decimal("3")))

    guard.check_kill_switches(_pnl_snapshot("5"))
    guard.check_kill_switches(_pnl_snapshot("2.5"))
    with pytest.raises(RiskHalt) as exc_info:
        guard.check_kill_switches(_pnl_snapshot("2"))
    assert "drawdown" in exc_info.value.reason


def test_manual_halt_blocks_every_plan():
    settings = make_settings()
    guard = RiskGuard(settings)
    guard.halt("operator")

    with pytest.raises(RiskHalt) as exc_info:
        guard.filter(_plan_for(settings, OrderStateTracker()), _pnl_snapshot("0"))
    assert exc_info.value.reason == "operator"
    assert guard.halt_reason == "operator"
