"""
Exchange Gateway interface

The core never talks to an exchange directly; it drives an object
satisfying ``ExchangeGateway``.  Implementations translate their
transport's failures into ``TransportError`` (retried by the dispatcher)
and business rejections into ``GatewayReject`` (fed to the tracker and
re-evaluated next cycle).

Streams are infinite and restartable: callers simply call the stream
method again after a disconnect.  A stream that cannot guarantee
gap-free resumption raises ``StaleDataError``.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Optional, Protocol, Union, runtime_checkable

from .types import ExchangeSnapshot, ExecutionEvent, MarketTick, Side


@dataclass(frozen=True)
class GatewayAck:
    exchange_order_id: Optional[str] = None


@dataclass(frozen=True)
class GatewayReject:
    reason: str


GatewayResult = Union[GatewayAck, GatewayReject]


@runtime_checkable
class ExchangeGateway(Protocol):
    # False when the venue has no native amend; amends become cancel/replace.
    supports_amend: bool

    async def place_order(
        self, client_order_id: str, side: Side, price: Decimal, size: Decimal,
    ) -> GatewayResult: ...

    async def cancel_order(self, exchange_order_id: str) -> GatewayResult: ...

    async def amend_order(
        self,
        exchange_order_id: str,
        new_price: Optional[Decimal] = None,
        new_size: Optional[Decimal] = None,
    ) -> GatewayResult: ...

    def stream_execution_reports(self) -> AsyncIterator[ExecutionEvent]: ...

    def stream_market_data(self, symbol: str) -> AsyncIterator[MarketTick]: ...

    async def fetch_open_orders_snapshot(self) -> ExchangeSnapshot: ...

    async def fetch_market_snapshot(self, symbol: str) -> MarketTick: ...

    async def close(self) -> None: ...
