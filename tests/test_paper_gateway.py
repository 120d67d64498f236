from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from grid_engine.errors import StaleDataError, TransportError
from grid_engine.gateway import ExchangeGateway, GatewayAck, GatewayReject
from grid_engine.paper_gateway import PaperGateway
from grid_engine.types import EventKind, Side


async def _drain(gateway: PaperGateway):
    """Collect every execution report published so far."""
    await gateway.close()
    return [event async for event in gateway.stream_execution_reports()]


def test_paper_gateway_satisfies_protocol():
    assert isinstance(PaperGateway("TEST-USD"), ExchangeGateway)


@pytest.mark.asyncio
async def test_place_is_idempotent_on_client_id():
    gateway = PaperGateway("TEST-USD", initial_price=Decimal("100"))

    first = await gateway.place_order("c1", Side.BUY, Decimal("99"), Decimal("1"))
    second = await gateway.place_order("c1", Side.BUY, Decimal("99"), Decimal("1"))

    assert isinstance(first, GatewayAck)
    assert first == second
    assert len(gateway.open_orders()) == 1


@pytest.mark.asyncio
async def test_post_only_place_crossing_market_is_rejected():
    gateway = PaperGateway("TEST-USD", initial_price=Decimal("100"))
    result = await gateway.place_order("c1", Side.SELL, Decimal("99.5"), Decimal("1"))
    assert result == GatewayReject("post_only_would_cross")


@pytest.mark.asyncio
async def test_market_move_fills_crossed_orders_at_limit():
    gateway = PaperGateway("TEST-USD", initial_price=Decimal("100"), fee_rate=Decimal("0.001"))
    await gateway.place_order("b", Side.BUY, Decimal("99"), Decimal("2"))
    await gateway.place_order("s", Side.SELL, Decimal("101"), Decimal("1"))

    gateway.set_price(Decimal("98"))

    assert [o.client_order_id for o in gateway.open_orders()] == ["s"]
    assert gateway.position.net_size == Decimal("2")
    assert gateway.position.fees == Decimal("0.198")

    events = await _drain(gateway)
    fills = [e for e in events if e.kind is EventKind.FILL]
    assert len(fills) == 1
    assert fills[0].client_order_id == "b"
    assert fills[0].filled_size == Decimal("2")
    assert fills[0].fill_price == Decimal("99")


@pytest.mark.asyncio
async def test_forced_partial_fill_then_cancel_reports_cumulative_size():
    gateway = PaperGateway("TEST-USD", initial_price=Decimal("100"))
    ack = await gateway.place_order("b", Side.BUY, Decimal("99"), Decimal("2"))
    gateway.fill("b", Decimal("0.5"))

    result = await gateway.cancel_order(ack.exchange_order_id)

    assert isinstance(result, GatewayAck)
    events = await _drain(gateway)
    assert [e.kind for e in events] == [EventKind.ACK, EventKind.FILL, EventKind.CANCELLED]
    assert [e.sequence for e in events] == [1, 2, 3]
    assert events[-1].filled_size == Decimal("0.5")


@pytest.mark.asyncio
async def test_amend_and_cancel_unknown_order():
    gateway = PaperGateway("TEST-USD", initial_price=Decimal("100"))
    ack = await gateway.place_order("b", Side.BUY, Decimal("99"), Decimal("1"))

    amended = await gateway.amend_order(ack.exchange_order_id, new_price=Decimal("98"))
    assert isinstance(amended, GatewayAck)
    assert gateway.open_orders()[0].price == Decimal("98")
    assert await gateway.amend_order(ack.exchange_order_id, new_price=Decimal("100")) == GatewayReject(
        "post_only_would_cross"
    )

    assert await gateway.cancel_order("999") == GatewayReject("order_not_found")


@pytest.mark.asyncio
async def test_injected_transport_failures_are_consumed():
    gateway = PaperGateway("TEST-USD", initial_price=Decimal("100"))
    gateway.transport_failures["fetch_open_orders_snapshot"] = 1

    with pytest.raises(TransportError):
        await gateway.fetch_open_orders_snapshot()
    snapshot = await gateway.fetch_open_orders_snapshot()
    assert snapshot.orders == ()


@pytest.mark.asyncio
async def test_market_stream_ends_on_close():
    gateway = PaperGateway("TEST-USD", initial_price=Decimal("100"))
    gateway.set_market(bid=Decimal("99.5"), ask=Decimal("100.5"))

    async def _collect():
        return [tick async for tick in gateway.stream_market_data("TEST-USD")]

    task = asyncio.create_task(_collect())
    await asyncio.sleep(0)
    await gateway.close()
    ticks = await asyncio.wait_for(task, timeout=1.0)

    assert [t.sequence for t in ticks] == [1, 2]
    assert ticks[-1].best_bid == Decimal("99.5")
    assert ticks[-1].last_trade_price == Decimal("100")


@pytest.mark.asyncio
async def test_dropped_ticks_leave_a_sequence_gap():
    gateway = PaperGateway("TEST-USD", initial_price=Decimal("100"))
    gateway.market_ticks_to_drop = 1
    gateway.set_price(Decimal("100.1"))
    gateway.set_price(Decimal("100.2"))
    snapshot = await gateway.fetch_market_snapshot("TEST-USD")
    await gateway.close()

    ticks = [tick async for tick in gateway.stream_market_data("TEST-USD")]

    assert [t.sequence for t in ticks] == [1, 3]
    assert snapshot.sequence == 3


@pytest.mark.asyncio
async def test_execution_stream_disconnect_and_dropped_reports():
    gateway = PaperGateway("TEST-USD", initial_price=Decimal("100"))
    gateway.execution_reports_to_drop = 1
    await gateway.place_order("c1", Side.BUY, Decimal("99"), Decimal("1"))
    await gateway.place_order("c2", Side.BUY, Decimal("98"), Decimal("1"))
    gateway.disconnect_execution_stream(StaleDataError("gap"))

    seen = []
    with pytest.raises(StaleDataError):
        async for event in gateway.stream_execution_reports():
            seen.append(event)

    assert [(e.kind, e.client_order_id) for e in seen] == [(EventKind.ACK, "c2")]
    # A fresh subscription keeps receiving reports.
    gateway.fill("c2", Decimal("1"))
    events = await _drain(gateway)
    assert [(e.kind, e.client_order_id) for e in events] == [(EventKind.FILL, "c2")]
