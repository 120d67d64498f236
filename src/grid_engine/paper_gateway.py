"""
Paper Gateway

In-memory simulated exchange implementing ``ExchangeGateway``.  Used by
``--paper`` runs and by the test suite.

Resting orders fill at their limit price when the market crosses them: a
buy fills once the best ask (or, without a book, the last trade) trades at
or below its price, a sell once the best bid trades at or above it.  Every
order change is published on the execution-report stream with a per-order
sequence number; every market update on the market-data stream with a
global one.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional

from .errors import TransportError
from .gateway import GatewayAck, GatewayReject, GatewayResult
from .types import (
    EventKind,
    ExchangeOrder,
    ExchangeSnapshot,
    ExecutionEvent,
    MarketTick,
    Position,
    Side,
)

logger = logging.getLogger(__name__)

_STREAM_END = object()


@dataclass
class _PaperOrder:
    client_order_id: str
    exchange_order_id: str
    side: Side
    price: Decimal
    size: Decimal
    filled_size: Decimal = Decimal("0")
    seq: int = 0
    placed_at: float = field(default_factory=time.monotonic)

    @property
    def remaining(self) -> Decimal:
        return self.size - self.filled_size

    def next_seq(self) -> int:
        self.seq += 1
        return self.seq


class PaperGateway:
    """Simulated venue for one market."""

    supports_amend = True

    def __init__(
        self,
        symbol: str,
        *,
        initial_price: Optional[Decimal] = None,
        fee_rate: Decimal = Decimal("0"),
        post_only: bool = True,
    ) -> None:
        self._symbol = symbol
        self._fee_rate = Decimal(str(fee_rate))
        self._post_only = post_only
        self._ids = itertools.count(1)
        self._orders: Dict[str, _PaperOrder] = {}
        self._by_client_id: Dict[str, _PaperOrder] = {}
        self._position = Position()
        self._market_seq = 0
        self._best_bid: Optional[Decimal] = None
        self._best_ask: Optional[Decimal] = None
        self._last_trade: Optional[Decimal] = None
        self._execution_queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._market_queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._closed = False

        # Fault injection: method name -> number of upcoming calls that fail.
        self.transport_failures: Dict[str, int] = {}
        # Number of upcoming market ticks / execution reports lost in transit.
        self.market_ticks_to_drop = 0
        self.execution_reports_to_drop = 0
        self.calls: List[str] = []

        if initial_price is not None:
            price = Decimal(str(initial_price))
            self.set_market(bid=price, ask=price, last=price)

    # ------------------------------------------------------------------
    # Market simulation
    # ------------------------------------------------------------------

    def set_market(
        self,
        *,
        bid: Optional[Decimal] = None,
        ask: Optional[Decimal] = None,
        last: Optional[Decimal] = None,
    ) -> MarketTick:
        """Move the simulated market, publish a tick and fill crossed orders."""
        if bid is not None:
            self._best_bid = Decimal(str(bid))
        if ask is not None:
            self._best_ask = Decimal(str(ask))
        if last is not None:
            self._last_trade = Decimal(str(last))
        self._market_seq += 1
        tick = self._current_tick()
        if self.market_ticks_to_drop > 0:
            self.market_ticks_to_drop -= 1
        else:
            self._market_queue.put_nowait(tick)
        self._match()
        return tick

    def set_price(self, price: Decimal) -> MarketTick:
        price = Decimal(str(price))
        return self.set_market(bid=price, ask=price, last=price)

    def fill(self, client_order_id: str, qty: Decimal, price: Optional[Decimal] = None) -> None:
        """Force a (partial) fill of an order, as a taker hitting it would."""
        order = self._by_client_id.get(client_order_id)
        if order is None or order.exchange_order_id not in self._orders:
            raise KeyError(client_order_id)
        self._execute_fill(order, min(Decimal(str(qty)), order.remaining), price or order.price)

    def _current_tick(self) -> MarketTick:
        return MarketTick(
            sequence=self._market_seq,
            best_bid=self._best_bid,
            best_ask=self._best_ask,
            last_trade_price=self._last_trade,
        )

    def _crosses(self, side: Side, price: Decimal) -> bool:
        if side is Side.BUY:
            touch = self._best_ask if self._best_ask is not None else self._last_trade
            return touch is not None and touch <= price
        touch = self._best_bid if self._best_bid is not None else self._last_trade
        return touch is not None and touch >= price

    def _match(self) -> None:
        for order in list(self._orders.values()):
            if self._crosses(order.side, order.price):
                self._execute_fill(order, order.remaining, order.price)

    def _execute_fill(self, order: _PaperOrder, qty: Decimal, price: Decimal) -> None:
        if qty <= 0:
            return
        fee = qty * price * self._fee_rate
        order.filled_size += qty
        self._position = self._position.apply_fill(order.side, qty, price, fee)
        done = order.filled_size >= order.size
        if done:
            self._orders.pop(order.exchange_order_id, None)
        logger.info(
            "Paper fill: %s %s %s at %s (filled %s/%s)",
            order.client_order_id, order.side.value, qty, price,
            order.filled_size, order.size,
        )
        self._publish(order, EventKind.FILL, filled_size=order.filled_size, fill_price=price, fee=fee)

    def _publish(self, order: _PaperOrder, kind: EventKind, **fields) -> None:
        event = ExecutionEvent(
            kind=kind,
            client_order_id=order.client_order_id,
            exchange_order_id=order.exchange_order_id,
            sequence=order.next_seq(),
            **fields,
        )
        if self.execution_reports_to_drop > 0:
            self.execution_reports_to_drop -= 1
            logger.debug("Paper: dropping %s report for %s", kind, order.client_order_id)
            return
        self._execution_queue.put_nowait(event)

    def disconnect_execution_stream(self, error: Optional[Exception] = None) -> None:
        """End the current execution-report stream, or make it raise *error*."""
        self._execution_queue.put_nowait(error if error is not None else _STREAM_END)

    def _maybe_fail(self, method: str) -> None:
        self.calls.append(method)
        if self._closed:
            raise TransportError("paper gateway closed")
        remaining = self.transport_failures.get(method, 0)
        if remaining > 0:
            self.transport_failures[method] = remaining - 1
            raise TransportError(f"injected {method} failure")

    # ------------------------------------------------------------------
    # ExchangeGateway
    # ------------------------------------------------------------------

    async def place_order(
        self, client_order_id: str, side: Side, price: Decimal, size: Decimal,
    ) -> GatewayResult:
        self._maybe_fail("place_order")
        existing = self._by_client_id.get(client_order_id)
        if existing is not None:
            return GatewayAck(exchange_order_id=existing.exchange_order_id)
        if price <= 0 or size <= 0:
            return GatewayReject("invalid_price_or_size")
        if self._post_only and self._crosses(side, price):
            return GatewayReject("post_only_would_cross")

        order = _PaperOrder(
            client_order_id=client_order_id,
            exchange_order_id=str(next(self._ids)),
            side=side,
            price=Decimal(str(price)),
            size=Decimal(str(size)),
        )
        self._orders[order.exchange_order_id] = order
        self._by_client_id[client_order_id] = order
        self._publish(order, EventKind.ACK)
        return GatewayAck(exchange_order_id=order.exchange_order_id)

    async def cancel_order(self, exchange_order_id: str) -> GatewayResult:
        self._maybe_fail("cancel_order")
        order = self._orders.pop(str(exchange_order_id), None)
        if order is None:
            return GatewayReject("order_not_found")
        self._publish(order, EventKind.CANCELLED, filled_size=order.filled_size)
        return GatewayAck(exchange_order_id=order.exchange_order_id)

    async def amend_order(
        self,
        exchange_order_id: str,
        new_price: Optional[Decimal] = None,
        new_size: Optional[Decimal] = None,
    ) -> GatewayResult:
        self._maybe_fail("amend_order")
        order = self._orders.get(str(exchange_order_id))
        if order is None:
            return GatewayReject("order_not_found")
        price = Decimal(str(new_price)) if new_price is not None else order.price
        size = Decimal(str(new_size)) if new_size is not None else order.size
        if size <= order.filled_size:
            return GatewayReject("size_below_filled")
        if self._post_only and self._crosses(order.side, price):
            return GatewayReject("post_only_would_cross")
        order.price = price
        order.size = size
        self._publish(order, EventKind.AMEND_ACK, new_price=price, new_size=size)
        return GatewayAck(exchange_order_id=order.exchange_order_id)

    async def stream_execution_reports(self) -> AsyncIterator[ExecutionEvent]:
        while True:
            item = await self._execution_queue.get()
            if item is _STREAM_END:
                return
            if isinstance(item, Exception):
                raise item
            yield item  # type: ignore[misc]

    async def stream_market_data(self, symbol: str) -> AsyncIterator[MarketTick]:
        if symbol != self._symbol:
            raise ValueError(f"paper gateway only simulates {self._symbol}, not {symbol}")
        while True:
            item = await self._market_queue.get()
            if item is _STREAM_END:
                return
            yield item  # type: ignore[misc]

    async def fetch_open_orders_snapshot(self) -> ExchangeSnapshot:
        self._maybe_fail("fetch_open_orders_snapshot")
        orders = tuple(
            ExchangeOrder(
                client_order_id=o.client_order_id,
                exchange_order_id=o.exchange_order_id,
                side=o.side,
                price=o.price,
                size=o.size,
                filled_size=o.filled_size,
            )
            for o in self._orders.values()
        )
        return ExchangeSnapshot(orders=orders, position=self._position)

    async def fetch_market_snapshot(self, symbol: str) -> MarketTick:
        self._maybe_fail("fetch_market_snapshot")
        return self._current_tick()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._execution_queue.put_nowait(_STREAM_END)
        self._market_queue.put_nowait(_STREAM_END)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def position(self) -> Position:
        return self._position

    def open_orders(self) -> List[ExchangeOrder]:
        return [
            ExchangeOrder(o.client_order_id, o.exchange_order_id, o.side, o.price, o.size, o.filled_size)
            for o in self._orders.values()
        ]
