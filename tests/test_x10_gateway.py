from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

pytest.importorskip("x10")

from x10.perpetual.orders import OrderSide, OrderStatus, TimeInForce  # noqa: E402

from conftest import make_settings  # noqa: E402
from grid_engine.errors import ConfigurationError, TransportError  # noqa: E402
from grid_engine.gateway import GatewayAck, GatewayReject  # noqa: E402
from grid_engine.types import EventKind, Side  # noqa: E402
from grid_engine.x10_gateway import (  # noqa: E402
    X10Gateway,
    build_trading_client,
    fetch_trading_rules,
    order_update_to_event,
)


def _gateway(client=None) -> X10Gateway:
    return X10Gateway(make_settings(), client or MagicMock(), stream_client=MagicMock())


def _update(status, **fields):
    base = dict(
        id=42, external_id="grid-abc", status=status, market="TEST-USD",
        price="99", filled_qty="0", average_price=None,
    )
    base.update(fields)
    return SimpleNamespace(**base)


def test_order_update_mapping():
    ack = order_update_to_event(_update(OrderStatus.NEW), 1)
    assert ack.kind is EventKind.ACK
    assert ack.client_order_id == "grid-abc"
    assert ack.exchange_order_id == "42"
    assert ack.sequence == 1

    fill = order_update_to_event(
        _update(OrderStatus.PARTIALLY_FILLED, filled_qty="0.4", average_price="98.9"), 2,
    )
    assert fill.kind is EventKind.FILL
    assert fill.filled_size == Decimal("0.4")
    assert fill.fill_price == Decimal("98.9")

    cancelled = order_update_to_event(_update(OrderStatus.CANCELLED, filled_qty="0.4"), 3)
    assert cancelled.kind is EventKind.CANCELLED
    assert cancelled.filled_size == Decimal("0.4")

    rejected = order_update_to_event(_update(OrderStatus.REJECTED, status_reason="POST_ONLY_FAILED"), 4)
    assert rejected.kind is EventKind.REJECT
    assert "POST_ONLY_FAILED" in rejected.reason

    assert order_update_to_event(_update(OrderStatus.EXPIRED), 5).kind is EventKind.EXPIRE


@pytest.mark.asyncio
async def test_place_order_sends_post_only_gtt_with_client_id():
    client = MagicMock()
    client.place_order = AsyncMock(
        return_value=SimpleNamespace(status="OK", error=None, data=SimpleNamespace(id=12345))
    )
    gateway = _gateway(client)

    result = await gateway.place_order("grid-1", Side.SELL, Decimal("101"), Decimal("2"))

    assert result == GatewayAck(exchange_order_id="12345")
    kwargs = client.place_order.await_args.kwargs
    assert kwargs["market_name"] == "TEST-USD"
    assert kwargs["side"] == OrderSide.SELL
    assert kwargs["price"] == Decimal("101")
    assert kwargs["amount_of_synthetic"] == Decimal("2")
    assert kwargs["post_only"] is True
    assert kwargs["time_in_force"] == TimeInForce.GTT
    assert kwargs["external_id"] == "grid-1"


@pytest.mark.asyncio
async def test_place_order_error_response_is_reject_and_exception_is_transport():
    client = MagicMock()
    client.place_order = AsyncMock(return_value=SimpleNamespace(status="ERR", error="bad", data=None))
    gateway = _gateway(client)
    assert await gateway.place_order("g", Side.BUY, Decimal("99"), Decimal("1")) == GatewayReject("bad")

    client.place_order = AsyncMock(side_effect=OSError("connection reset"))
    with pytest.raises(TransportError):
        await gateway.place_order("g", Side.BUY, Decimal("99"), Decimal("1"))


@pytest.mark.asyncio
async def test_cancel_uses_numeric_exchange_id_and_amend_is_unsupported():
    client = MagicMock()
    client.orders.cancel_order = AsyncMock(return_value=SimpleNamespace(status="OK", error=None))
    gateway = _gateway(client)

    assert await gateway.cancel_order("77") == GatewayAck(exchange_order_id="77")
    client.orders.cancel_order.assert_awaited_once_with(order_id=77)

    assert gateway.supports_amend is False
    assert await gateway.amend_order("77", new_price=Decimal("1")) == GatewayReject("amend_not_supported")


@pytest.mark.asyncio
async def test_open_orders_snapshot_filters_market_and_signs_short_position():
    client = MagicMock()
    client.account.get_open_orders = AsyncMock(return_value=SimpleNamespace(data=[
        SimpleNamespace(id=1, external_id="grid-a", market="TEST-USD", side="BUY",
                        price="99", qty="1", filled_qty="0.25"),
        SimpleNamespace(id=2, external_id="x", market="OTHER-USD", side="SELL",
                        price="5", qty="1", filled_qty=None),
    ]))
    client.account.get_positions = AsyncMock(return_value=SimpleNamespace(data=[
        SimpleNamespace(market="TEST-USD", side="SHORT", size="3", open_price="101"),
    ]))
    gateway = _gateway(client)

    snapshot = await gateway.fetch_open_orders_snapshot()

    assert len(snapshot.orders) == 1
    order = snapshot.orders[0]
    assert (order.client_order_id, order.exchange_order_id, order.side) == ("grid-a", "1", Side.BUY)
    assert order.filled_size == Decimal("0.25")
    assert snapshot.position.net_size == Decimal("-3")
    assert snapshot.position.average_entry_price == Decimal("101")


@pytest.mark.asyncio
async def test_fetch_trading_rules_reads_market_config():
    cfg = SimpleNamespace(min_price_change="0.1", min_order_size_change="0.001", min_order_size="0.01")
    client = MagicMock()
    client.markets_info.get_markets_dict = AsyncMock(
        return_value={"TEST-USD": SimpleNamespace(trading_config=cfg)}
    )

    rules = await fetch_trading_rules(client, "TEST-USD")
    assert rules.tick_size == Decimal("0.1")
    assert rules.lot_size == Decimal("0.001")

    with pytest.raises(ConfigurationError):
        await fetch_trading_rules(client, "NOPE-USD")


def test_build_trading_client_requires_credentials():
    with pytest.raises(ConfigurationError):
        build_trading_client(make_settings())
