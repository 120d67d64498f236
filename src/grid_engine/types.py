"""Shared value types for the grid engine.

Everything here is an immutable value object.  Mutation happens by
building a new instance (``dataclasses.replace``) inside the single
owner of each type: the ladder owns ``GridLevel``s, the order tracker
owns ``ManagedOrder``s and the ``Position``.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple, Union


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def sign(self) -> Decimal:
        return Decimal("1") if self is Side.BUY else Decimal("-1")

    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY

    @classmethod
    def parse(cls, value) -> "Side":
        raw = str(getattr(value, "value", value)).strip().upper()
        if raw in ("B", "BUY", "BID", "LONG"):
            return cls.BUY
        if raw in ("A", "S", "SELL", "ASK", "SHORT"):
            return cls.SELL
        raise ValueError(f"unknown order side: {value!r}")


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLING = "CANCELLING"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    OrderStatus.FILLED,
    OrderStatus.CANCELLED,
    OrderStatus.REJECTED,
    OrderStatus.EXPIRED,
})


class EventKind(str, Enum):
    """Kinds of execution-report events understood by the order tracker."""

    ACK = "ack"
    FILL = "fill"
    CANCEL_SUBMITTED = "cancel_submitted"
    CANCEL_ACK = "cancel_ack"
    CANCEL_REJECT = "cancel_reject"
    CANCELLED = "cancelled"
    AMEND_SUBMITTED = "amend_submitted"
    AMEND_ACK = "amend_ack"
    AMEND_REJECT = "amend_reject"
    REJECT = "reject"
    EXPIRE = "expire"
    DISPATCH_TIMEOUT = "dispatch_timeout"


# (generation, side, level_index)
LevelKey = Tuple[int, Side, int]


@dataclass(frozen=True)
class GridLevel:
    """One rung of the ladder."""

    price: Decimal
    side: Side
    target_size: Decimal
    level_index: int
    generation: int = 0

    @property
    def key(self) -> LevelKey:
        return (self.generation, self.side, self.level_index)


@dataclass(frozen=True)
class Ladder:
    """The full set of desired levels for one ladder generation."""

    reference_price: Decimal
    generation: int
    levels: Tuple[GridLevel, ...]

    def by_key(self) -> dict:
        return {level.key: level for level in self.levels}

    def side_levels(self, side: Side) -> Tuple[GridLevel, ...]:
        return tuple(lvl for lvl in self.levels if lvl.side is side)


@dataclass(frozen=True)
class ManagedOrder:
    """Local mirror of one order we placed (or adopted) on the exchange."""

    client_order_id: str
    side: Side
    price: Decimal
    size: Decimal
    level_index: Optional[int] = None
    generation: Optional[int] = None
    exchange_order_id: Optional[str] = None
    filled_size: Decimal = Decimal("0")
    status: OrderStatus = OrderStatus.PENDING
    last_sequence: Optional[int] = None
    pending_action: Optional[str] = None
    reject_reason: Optional[str] = None
    # Placed below its level size because of the risk limit.
    size_capped: bool = False
    created_at: float = field(default_factory=time.monotonic)
    updated_at: float = field(default_factory=time.monotonic)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def remaining_size(self) -> Decimal:
        return max(Decimal("0"), self.size - self.filled_size)

    @property
    def is_orphan(self) -> bool:
        return self.level_index is None or self.generation is None

    @property
    def level_key(self) -> Optional[LevelKey]:
        if self.is_orphan:
            return None
        return (self.generation, self.side, self.level_index)  # type: ignore[return-value]


@dataclass(frozen=True)
class Position:
    net_size: Decimal = Decimal("0")
    average_entry_price: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")

    def apply_fill(
        self, side: Side, qty: Decimal, price: Decimal, fee: Decimal = Decimal("0"),
    ) -> "Position":
        """Return the position after a fill of *qty* at *price*."""
        if qty <= 0:
            return self
        signed = qty * side.sign
        net = self.net_size
        entry = self.average_entry_price
        realized = self.realized_pnl

        if net == 0 or (net > 0) == (signed > 0):
            new_net = net + signed
            entry = (entry * abs(net) + price * qty) / abs(new_net)
        else:
            close_qty = min(qty, abs(net))
            if net > 0:
                realized += (price - entry) * close_qty
            else:
                realized += (entry - price) * close_qty
            new_net = net + signed
            if new_net == 0:
                entry = Decimal("0")
            elif (new_net > 0) != (net > 0):
                # Flipped through zero: the remainder opens at the fill price.
                entry = price

        return Position(
            net_size=new_net,
            average_entry_price=entry,
            realized_pnl=realized,
            fees=self.fees + fee,
        )


@dataclass(frozen=True)
class ExecutionEvent:
    """A single execution report for one of our orders.

    ``filled_size`` is the *cumulative* filled quantity of the order as
    reported by the exchange.  ``sequence`` is a per-order monotonically
    increasing number; ``None`` marks an event synthesised locally from a
    REST reply, which bypasses sequence de-duplication.
    """

    kind: EventKind
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[str] = None
    sequence: Optional[int] = None
    filled_size: Optional[Decimal] = None
    fill_price: Optional[Decimal] = None
    fee: Decimal = Decimal("0")
    new_price: Optional[Decimal] = None
    new_size: Optional[Decimal] = None
    reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class MarketTick:
    sequence: int
    best_bid: Optional[Decimal] = None
    best_ask: Optional[Decimal] = None
    last_trade_price: Optional[Decimal] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ExchangeOrder:
    """An open order as reported by a REST snapshot."""

    client_order_id: Optional[str]
    exchange_order_id: str
    side: Side
    price: Decimal
    size: Decimal
    filled_size: Decimal = Decimal("0")


@dataclass(frozen=True)
class ExchangeSnapshot:
    orders: Tuple[ExchangeOrder, ...] = ()
    position: Position = field(default_factory=Position)


# ---------------------------------------------------------------------------
# Action plan
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Place:
    """Place an order for *level*.

    ``capped`` marks a place the risk guard shrank below the level's size.
    """

    level: GridLevel
    capped: bool = False


@dataclass(frozen=True)
class Cancel:
    order: ManagedOrder
    reason: str = ""


@dataclass(frozen=True)
class Amend:
    order: ManagedOrder
    new_price: Optional[Decimal] = None
    new_size: Optional[Decimal] = None


Action = Union[Place, Cancel, Amend]
ActionPlan = Tuple[Action, ...]
