"""
X10 (Extended) Exchange Gateway

Adapts the x10 perpetual trading SDK to ``ExchangeGateway``:

* orders are post-only GTT limit orders carrying our client order id as
  the SDK's ``external_id`` (the venue de-duplicates on it);
* the account WebSocket feeds execution reports, with the stream's own
  ``seq`` used for gap detection;
* the SDK ``OrderBook`` feeds best bid/ask into the market-data stream;
* REST calls back the open-order, position and market snapshots.

The venue has no native amend, so ``supports_amend`` is False and the
reconciler falls back to cancel/replace.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncIterator, List, Optional

from x10.perpetual.accounts import StarkPerpetualAccount
from x10.perpetual.orderbook import OrderBook
from x10.perpetual.orders import OrderSide, OrderStatus, OrderType, TimeInForce
from x10.perpetual.stream_client.stream_client import PerpetualStreamClient
from x10.perpetual.trading_client import PerpetualTradingClient

from .config import GridSettings
from .errors import ConfigurationError, StaleDataError, TransportError
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
from .utils import optional_decimal, safe_decimal

logger = logging.getLogger(__name__)

_ORDERBOOK_DEPTH = 1


@dataclass(frozen=True)
class TradingRules:
    tick_size: Decimal
    lot_size: Decimal
    min_order_size: Decimal


def build_trading_client(settings: GridSettings) -> PerpetualTradingClient:
    if not settings.is_configured:
        raise ConfigurationError(
            "Missing credentials (GRID_VAULT_ID, GRID_STARK_PRIVATE_KEY, "
            "GRID_STARK_PUBLIC_KEY, GRID_API_KEY)"
        )
    account = StarkPerpetualAccount(
        vault=int(settings.vault_id),
        private_key=settings.stark_private_key,
        public_key=settings.stark_public_key,
        api_key=settings.api_key,
    )
    return PerpetualTradingClient(settings.endpoint_config, account)


async def fetch_trading_rules(client: PerpetualTradingClient, market_name: str) -> TradingRules:
    """Read tick size and lot size for *market_name* from the exchange."""
    markets = await client.markets_info.get_markets_dict()
    market_info = markets.get(market_name)
    if market_info is None:
        raise ConfigurationError(f"Market {market_name} not found on exchange")
    cfg = market_info.trading_config
    rules = TradingRules(
        tick_size=Decimal(str(cfg.min_price_change)),
        lot_size=Decimal(str(cfg.min_order_size_change)),
        min_order_size=Decimal(str(cfg.min_order_size)),
    )
    logger.info(
        "Market %s: tick_size=%s lot_size=%s min_order_size=%s",
        market_name, rules.tick_size, rules.lot_size, rules.min_order_size,
    )
    return rules


def _to_sdk_side(side: Side) -> OrderSide:
    return OrderSide.BUY if side is Side.BUY else OrderSide.SELL


def _response_error(resp: Any) -> Optional[str]:
    if hasattr(resp, "status") and hasattr(resp, "error"):
        if resp.status != "OK" or resp.error is not None:
            return str(resp.error or resp.status)
    return None


def _price_of(raw: Any) -> Optional[Decimal]:
    if raw is None:
        return None
    if isinstance(raw, (int, float, Decimal)):
        return Decimal(str(raw))
    return optional_decimal(getattr(raw, "price", None))


def order_update_to_event(order: Any, sequence: int) -> Optional[ExecutionEvent]:
    """Map an SDK order update onto an ``ExecutionEvent`` (None if irrelevant)."""
    status = order.status
    filled = safe_decimal(getattr(order, "filled_qty", None) or "0")
    common = dict(
        client_order_id=getattr(order, "external_id", None),
        exchange_order_id=str(order.id) if getattr(order, "id", None) is not None else None,
        sequence=sequence,
    )
    if status == OrderStatus.NEW:
        return ExecutionEvent(kind=EventKind.ACK, **common)
    if status in (OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED):
        price = optional_decimal(getattr(order, "average_price", None)) or safe_decimal(order.price)
        return ExecutionEvent(kind=EventKind.FILL, filled_size=filled, fill_price=price, **common)
    if status == OrderStatus.CANCELLED:
        return ExecutionEvent(kind=EventKind.CANCELLED, filled_size=filled, **common)
    if status == OrderStatus.EXPIRED:
        return ExecutionEvent(kind=EventKind.EXPIRE, filled_size=filled, **common)
    if status == OrderStatus.REJECTED:
        reason = getattr(order, "status_reason", None)
        return ExecutionEvent(
            kind=EventKind.REJECT,
            reason=str(reason) if reason is not None else "rejected",
            **common,
        )
    return None


class X10Gateway:
    """``ExchangeGateway`` backed by the x10 perpetual SDK."""

    supports_amend = False

    def __init__(
        self,
        settings: GridSettings,
        trading_client: PerpetualTradingClient,
        *,
        stream_client: Optional[PerpetualStreamClient] = None,
    ) -> None:
        self._settings = settings
        self._market_name = settings.market_name
        self._client = trading_client
        self._stream_client = stream_client or PerpetualStreamClient(
            api_url=settings.endpoint_config.stream_url,
        )
        # Strictly increasing across reconnects, so per-order ordering holds.
        self._event_seq = 0
        self._market_seq = 0
        self._orderbooks: List[Any] = []

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_order(
        self, client_order_id: str, side: Side, price: Decimal, size: Decimal,
    ) -> GatewayResult:
        try:
            resp = await self._client.place_order(
                market_name=self._market_name,
                amount_of_synthetic=size,
                price=price,
                side=_to_sdk_side(side),
                order_type=OrderType.LIMIT,
                time_in_force=TimeInForce.GTT,
                post_only=True,
                external_id=client_order_id,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise TransportError(f"place_order failed: {exc}") from exc

        error = _response_error(resp)
        if error is not None:
            return GatewayReject(error)
        data = getattr(resp, "data", None)
        exchange_id = getattr(data, "id", None)
        return GatewayAck(exchange_order_id=str(exchange_id) if exchange_id is not None else None)

    async def cancel_order(self, exchange_order_id: str) -> GatewayResult:
        try:
            resp = await self._client.orders.cancel_order(order_id=int(exchange_order_id))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise TransportError(f"cancel_order failed: {exc}") from exc
        error = _response_error(resp)
        if error is not None:
            return GatewayReject(error)
        return GatewayAck(exchange_order_id=str(exchange_order_id))

    async def amend_order(
        self,
        exchange_order_id: str,
        new_price: Optional[Decimal] = None,
        new_size: Optional[Decimal] = None,
    ) -> GatewayResult:
        return GatewayReject("amend_not_supported")

    async def mass_cancel(self) -> None:
        """Cancel every order on the market in one call."""
        try:
            await self._client.orders.mass_cancel(markets=[self._market_name])
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise TransportError(f"mass_cancel failed: {exc}") from exc
        logger.info("Mass cancel issued for market=%s", self._market_name)

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def stream_execution_reports(self) -> AsyncIterator[ExecutionEvent]:
        last_seq: Optional[int] = None
        async with self._stream_client.subscribe_to_account_updates(self._settings.api_key) as stream:
            logger.info("Account stream connected")
            async for event in stream:
                current_seq = int(getattr(event, "seq", 0))
                if last_seq is not None:
                    if current_seq <= last_seq:
                        logger.debug("Dropping re-delivered account event seq=%d", current_seq)
                        continue
                    if current_seq != last_seq + 1:
                        logger.critical(
                            "Account stream sequence gap for %s: prev=%s current=%s",
                            self._market_name, last_seq, current_seq,
                        )
                        raise StaleDataError(
                            "account stream sequence gap",
                            expected=last_seq + 1,
                            received=current_seq,
                        )
                last_seq = current_seq

                data = getattr(event, "data", None)
                if data is None or not data.orders:
                    continue
                for order in data.orders:
                    if order.market != self._market_name:
                        continue
                    self._event_seq += 1
                    mapped = order_update_to_event(order, self._event_seq)
                    if mapped is not None:
                        yield mapped

    async def stream_market_data(self, symbol: str) -> AsyncIterator[MarketTick]:
        queue: "asyncio.Queue[MarketTick]" = asyncio.Queue()
        state = {"bid": None, "ask": None}

        def _push() -> None:
            self._market_seq += 1
            queue.put_nowait(MarketTick(
                sequence=self._market_seq,
                best_bid=state["bid"],
                best_ask=state["ask"],
            ))

        async def _on_bid(raw) -> None:
            try:
                price = _price_of(raw)
                if price is not None:
                    state["bid"] = price
                    _push()
            except Exception as exc:
                logger.error("Error in bid callback: %s", exc, exc_info=True)

        async def _on_ask(raw) -> None:
            try:
                price = _price_of(raw)
                if price is not None:
                    state["ask"] = price
                    _push()
            except Exception as exc:
                logger.error("Error in ask callback: %s", exc, exc_info=True)

        orderbook = await OrderBook.create(
            endpoint_config=self._settings.endpoint_config,
            market_name=symbol,
            best_bid_change_callback=_on_bid,
            best_ask_change_callback=_on_ask,
            start=True,
            depth=_ORDERBOOK_DEPTH,
        )
        self._orderbooks.append(orderbook)
        logger.info("Orderbook stream started for %s", symbol)
        try:
            while True:
                yield await queue.get()
        finally:
            self._orderbooks.remove(orderbook)
            try:
                await orderbook.close()
            except Exception as exc:
                logger.warning("Error closing orderbook for %s: %s", symbol, exc)

    # ------------------------------------------------------------------
    # REST snapshots
    # ------------------------------------------------------------------

    async def fetch_open_orders_snapshot(self) -> ExchangeSnapshot:
        try:
            orders_resp = await self._client.account.get_open_orders(market_names=[self._market_name])
            positions_resp = await self._client.account.get_positions()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise TransportError(f"snapshot fetch failed: {exc}") from exc

        orders = []
        for o in getattr(orders_resp, "data", None) or []:
            if getattr(o, "market", self._market_name) != self._market_name:
                continue
            orders.append(ExchangeOrder(
                client_order_id=getattr(o, "external_id", None),
                exchange_order_id=str(o.id),
                side=Side.parse(o.side),
                price=safe_decimal(o.price),
                size=safe_decimal(o.qty),
                filled_size=safe_decimal(getattr(o, "filled_qty", None) or "0"),
            ))

        position = Position()
        for pos in getattr(positions_resp, "data", None) or []:
            if getattr(pos, "market", None) != self._market_name:
                continue
            size_abs = safe_decimal(getattr(pos, "size", "0"))
            sign = Decimal("-1") if "SHORT" in str(getattr(pos, "side", "")).upper() else Decimal("1")
            position = Position(
                net_size=size_abs * sign,
                average_entry_price=safe_decimal(getattr(pos, "open_price", None) or "0"),
            )
            break
        return ExchangeSnapshot(orders=tuple(orders), position=position)

    async def fetch_market_snapshot(self, symbol: str) -> MarketTick:
        try:
            resp = await self._client.markets_info.get_market_statistics(market_name=symbol)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise TransportError(f"market snapshot fetch failed: {exc}") from exc
        stats = getattr(resp, "data", resp)
        self._market_seq += 1
        return MarketTick(
            sequence=self._market_seq,
            best_bid=optional_decimal(getattr(stats, "bid_price", None)),
            best_ask=optional_decimal(getattr(stats, "ask_price", None)),
            last_trade_price=optional_decimal(getattr(stats, "last_price", None)),
        )

    async def close(self) -> None:
        for orderbook in list(self._orderbooks):
            try:
                await orderbook.close()
            except Exception as exc:
                logger.warning("Error closing orderbook: %s", exc)
        self._orderbooks.clear()
        await self._client.close()
