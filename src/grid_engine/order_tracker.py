"""
Order State Tracker

Single source of truth for order and position state.  Execution reports
from the gateway's stream and outcomes synthesised by the dispatcher from
REST replies all flow through ``apply()``; nothing else mutates a
``ManagedOrder`` or the ``Position``.

Stream events carry a per-order monotonically increasing sequence number.
Anything at or below the last applied sequence for that order is a
duplicate or a stale re-delivery and is discarded, which makes ``apply``
idempotent.  Locally synthesised events have ``sequence=None``: they skip
de-duplication but the transition table still only lets them move an order
forward.

Fills report the *cumulative* filled size, so a fill racing a cancel can
never double count or lose quantity: the tracker keeps
``max(current, reported)`` clamped to the order size, and a cancel
confirmation on a fully filled order resolves to FILLED.

``ManagedOrder`` is frozen; every mutation installs a new instance, so a
``snapshot()`` is a cheap tuple of references that later writes can never
change under the reader.
"""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .errors import UnrecognizedEvent
from .types import (
    EventKind,
    ExchangeSnapshot,
    ExecutionEvent,
    LevelKey,
    ManagedOrder,
    OrderStatus,
    Position,
)

logger = logging.getLogger(__name__)

_DEFAULT_HISTORY_SIZE = 1000

_CANCELLABLE = frozenset({
    OrderStatus.PENDING,
    OrderStatus.OPEN,
    OrderStatus.PARTIALLY_FILLED,
})

# Callback signature: (order_after_event, event_kind)
OrderChangeCallback = Callable[[ManagedOrder, EventKind], None]


@dataclass(frozen=True)
class TrackerSnapshot:
    """Immutable read view, consistent as of ``version``."""

    orders: Tuple[ManagedOrder, ...]
    position: Position
    version: int

    def by_level(self) -> Dict[LevelKey, ManagedOrder]:
        return {o.level_key: o for o in self.orders if o.level_key is not None}

    def get(self, client_order_id: str) -> Optional[ManagedOrder]:
        for order in self.orders:
            if order.client_order_id == client_order_id:
                return order
        return None


class OrderStateTracker:
    """Single-writer mirror of exchange order and position state."""

    def __init__(self, *, history_size: int = _DEFAULT_HISTORY_SIZE) -> None:
        self._orders: Dict[str, ManagedOrder] = {}
        self._history: "OrderedDict[str, ManagedOrder]" = OrderedDict()
        self._history_size = history_size
        self._by_exchange_id: Dict[str, str] = {}
        self._by_level: Dict[LevelKey, str] = {}
        self._position = Position()
        self._version = 0
        self._snapshot: Optional[TrackerSnapshot] = None
        self._listeners: List[OrderChangeCallback] = []

        self.applied_events = 0
        self.duplicate_events = 0
        self.dropped_events = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def on_change(self, cb: OrderChangeCallback) -> None:
        """Register a callback invoked after every applied event."""
        self._listeners.append(cb)

    def track_new(self, order: ManagedOrder) -> bool:
        """Start tracking a freshly issued place request.

        Returns False (and tracks nothing) if the client id is already known
        or the order's level already has a non-terminal order.
        """
        cid = order.client_order_id
        if cid in self._orders or cid in self._history:
            logger.error("Refusing to track duplicate client_order_id=%s", cid)
            return False
        key = order.level_key
        if key is not None and key in self._by_level:
            logger.error(
                "Refusing to track %s: level %s already bound to %s",
                cid, key, self._by_level[key],
            )
            return False
        self._install(order)
        self._bump()
        return True

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    def apply(self, event: ExecutionEvent) -> bool:
        """Apply one execution report.  Never raises.

        Returns True if the event changed state.
        """
        try:
            return self._apply(event)
        except UnrecognizedEvent as exc:
            self.dropped_events += 1
            logger.warning(
                "Dropping %s event (client_id=%s exchange_id=%s seq=%s): %s",
                event.kind, event.client_order_id, event.exchange_order_id,
                event.sequence, exc,
            )
            return False
        except Exception as exc:
            self.dropped_events += 1
            logger.error(
                "Failed to apply %s event for client_id=%s: %s",
                getattr(event, "kind", "?"), getattr(event, "client_order_id", "?"), exc,
                exc_info=True,
            )
            return False

    def _apply(self, event: ExecutionEvent) -> bool:
        if not isinstance(event.kind, EventKind):
            raise UnrecognizedEvent(f"unknown event kind {event.kind!r}")

        cid = self._resolve_client_id(event)
        if cid is None:
            raise UnrecognizedEvent("event does not match any tracked order")
        current = self._orders.get(cid) or self._history.get(cid)
        if current is None:
            raise UnrecognizedEvent(f"unknown client_order_id {cid}")

        if (
            event.sequence is not None
            and current.last_sequence is not None
            and event.sequence <= current.last_sequence
        ):
            self.duplicate_events += 1
            logger.debug(
                "Discarding duplicate/stale event %s for %s: seq=%d last=%d",
                event.kind, cid, event.sequence, current.last_sequence,
            )
            return False

        if current.is_terminal:
            updated, fill_qty = self._apply_to_terminal(current, event)
        else:
            updated, fill_qty = self._transition(current, event)
        if updated is None:
            return False

        if event.exchange_order_id and updated.exchange_order_id is None:
            updated = replace(updated, exchange_order_id=str(event.exchange_order_id))
        if event.sequence is not None:
            updated = replace(updated, last_sequence=event.sequence)
        updated = replace(updated, updated_at=time.monotonic())

        if fill_qty > 0:
            price = event.fill_price if event.fill_price is not None else updated.price
            self._position = self._position.apply_fill(updated.side, fill_qty, price, event.fee)
            logger.info(
                "Fill: client_id=%s side=%s qty=%s price=%s filled=%s/%s net=%s",
                cid, updated.side.value, fill_qty, price,
                updated.filled_size, updated.size, self._position.net_size,
            )

        self._replace(current, updated)
        if updated.status != current.status:
            logger.info(
                "Order %s: %s -> %s (level=%s exchange_id=%s)",
                cid, current.status.value, updated.status.value,
                updated.level_index, updated.exchange_order_id,
            )
        self.applied_events += 1
        self._bump()
        self._notify(updated, event.kind)
        return True

    def _transition(
        self, order: ManagedOrder, event: ExecutionEvent,
    ) -> Tuple[Optional[ManagedOrder], Decimal]:
        """Return the order after *event* plus the newly filled quantity."""
        kind = event.kind
        status = order.status
        zero = Decimal("0")

        if kind is EventKind.ACK:
            if status is OrderStatus.PENDING:
                return replace(order, status=OrderStatus.OPEN), zero
            # Late ack: the stream already moved the order on.
            return order, zero

        if kind is EventKind.FILL:
            order, qty = self._with_fill(order, event)
            if order.filled_size >= order.size:
                return replace(order, status=OrderStatus.FILLED, pending_action=None), qty
            if status in _CANCELLABLE and order.filled_size > 0:
                return replace(order, status=OrderStatus.PARTIALLY_FILLED), qty
            return order, qty

        if kind is EventKind.CANCEL_SUBMITTED:
            return replace(order, pending_action="cancel"), zero

        if kind is EventKind.CANCEL_ACK:
            if status in _CANCELLABLE:
                return replace(order, status=OrderStatus.CANCELLING, pending_action=None), zero
            return replace(order, pending_action=None), zero

        if kind is EventKind.CANCEL_REJECT:
            restored = status
            if status is OrderStatus.CANCELLING:
                restored = OrderStatus.PARTIALLY_FILLED if order.filled_size > 0 else OrderStatus.OPEN
            return replace(
                order, status=restored, pending_action=None, reject_reason=event.reason,
            ), zero

        if kind is EventKind.CANCELLED:
            order, qty = self._with_fill(order, event, required=False)
            final = OrderStatus.FILLED if order.filled_size >= order.size else OrderStatus.CANCELLED
            return replace(order, status=final, pending_action=None), qty

        if kind is EventKind.AMEND_SUBMITTED:
            return replace(order, pending_action="amend"), zero

        if kind is EventKind.AMEND_ACK:
            new_price = event.new_price if event.new_price is not None else order.price
            new_size = event.new_size if event.new_size is not None else order.size
            if new_size < order.filled_size:
                # A fill landed between the amend request and its ack.
                logger.warning(
                    "Amend of %s acked at size %s below filled size %s; keeping filled size",
                    order.client_order_id, new_size, order.filled_size,
                )
                new_size = order.filled_size
            amended = replace(order, price=new_price, size=new_size, pending_action=None)
            if amended.filled_size >= amended.size:
                amended = replace(amended, status=OrderStatus.FILLED)
            return amended, zero

        if kind is EventKind.AMEND_REJECT:
            return replace(order, pending_action=None, reject_reason=event.reason), zero

        if kind is EventKind.REJECT:
            return replace(
                order, status=OrderStatus.REJECTED, pending_action=None,
                reject_reason=event.reason,
            ), zero

        if kind is EventKind.EXPIRE:
            order, qty = self._with_fill(order, event, required=False)
            final = OrderStatus.FILLED if order.filled_size >= order.size else OrderStatus.EXPIRED
            return replace(order, status=final, pending_action=None, reject_reason=event.reason), qty

        if kind is EventKind.DISPATCH_TIMEOUT:
            # A timed-out place stays PENDING: a late ack may still arrive.
            return replace(order, pending_action=None, reject_reason=event.reason), zero

        raise UnrecognizedEvent(f"no transition for {kind}")

    def _apply_to_terminal(
        self, order: ManagedOrder, event: ExecutionEvent,
    ) -> Tuple[Optional[ManagedOrder], Decimal]:
        """Late events for finished orders may only add filled quantity."""
        if event.kind not in (EventKind.FILL, EventKind.CANCELLED, EventKind.EXPIRE):
            logger.debug(
                "Ignoring %s for terminal order %s (%s)",
                event.kind, order.client_order_id, order.status.value,
            )
            return None, Decimal("0")
        updated, qty = self._with_fill(order, event, required=False)
        if qty <= 0:
            return None, qty
        if updated.filled_size >= updated.size:
            updated = replace(updated, status=OrderStatus.FILLED)
        logger.warning(
            "Late fill for terminal order %s: +%s (now %s/%s, status %s)",
            order.client_order_id, qty, updated.filled_size, updated.size,
            updated.status.value,
        )
        return updated, qty

    @staticmethod
    def _with_fill(
        order: ManagedOrder, event: ExecutionEvent, *, required: bool = True,
    ) -> Tuple[ManagedOrder, Decimal]:
        if event.filled_size is None:
            if required:
                raise UnrecognizedEvent("fill event without cumulative filled_size")
            return order, Decimal("0")
        reported = Decimal(str(event.filled_size))
        if reported < 0:
            raise UnrecognizedEvent(f"negative filled_size {reported}")
        if reported > order.size:
            logger.warning(
                "Reported filled size %s exceeds order size %s for %s; clamping",
                reported, order.size, order.client_order_id,
            )
            reported = order.size
        new_filled = max(order.filled_size, reported)
        return replace(order, filled_size=new_filled), new_filled - order.filled_size

    # ------------------------------------------------------------------
    # REST resync
    # ------------------------------------------------------------------

    def resync(
        self,
        snapshot: ExchangeSnapshot,
        *,
        bindings: Optional[Mapping[str, LevelKey]] = None,
        pending_grace_s: float = 30.0,
        requested_at: Optional[float] = None,
    ) -> None:
        """Align local state with an authoritative REST snapshot.

        Unknown open orders are adopted (re-bound through *bindings* when a
        persisted binding exists, otherwise as orphans).  Local orders the
        exchange no longer reports are finished, except:

        * orders younger than *pending_grace_s*, which may simply not be
          visible in the snapshot yet;
        * orders that changed locally at or after *requested_at* (the
          monotonic time the snapshot was requested), since the snapshot
          predates what we know about them.

        A CANCELLING order missing from the snapshot is always finished.
        """
        bindings = bindings or {}
        now = time.monotonic()
        seen: set = set()

        for ex in snapshot.orders:
            cid = ex.client_order_id or self._by_exchange_id.get(ex.exchange_order_id)
            if cid is None:
                cid = f"exch-{ex.exchange_order_id}"
            seen.add(cid)
            live_status = OrderStatus.PARTIALLY_FILLED if ex.filled_size > 0 else OrderStatus.OPEN
            known = self._orders.get(cid) or self._history.get(cid)

            if known is not None:
                status = known.status
                if status is OrderStatus.PENDING or known.is_terminal:
                    status = live_status
                elif status is OrderStatus.OPEN and ex.filled_size > 0:
                    status = OrderStatus.PARTIALLY_FILLED
                updated = replace(
                    known,
                    exchange_order_id=ex.exchange_order_id,
                    filled_size=min(max(known.filled_size, ex.filled_size), known.size),
                    status=status,
                    updated_at=now,
                )
                if known.is_terminal:
                    logger.warning(
                        "Order %s reported open by exchange but locally %s; reviving",
                        cid, known.status.value,
                    )
                self._replace(known, updated)
                continue

            key = bindings.get(cid)
            generation, level_index = (key[0], key[2]) if key is not None else (None, None)
            if key is not None and key in self._by_level:
                generation, level_index = None, None
            adopted = ManagedOrder(
                client_order_id=cid,
                side=ex.side,
                price=ex.price,
                size=ex.size,
                level_index=level_index,
                generation=generation,
                exchange_order_id=ex.exchange_order_id,
                filled_size=ex.filled_size,
                status=live_status,
            )
            self._install(adopted)
            logger.info(
                "Adopted exchange order %s (exchange_id=%s side=%s price=%s size=%s %s)",
                cid, ex.exchange_order_id, ex.side.value, ex.price, ex.size,
                "orphan" if adopted.is_orphan else f"level={level_index} gen={generation}",
            )

        for cid, order in list(self._orders.items()):
            if cid in seen:
                continue
            if order.status is not OrderStatus.CANCELLING:
                if (now - order.created_at) < pending_grace_s:
                    continue
                if requested_at is not None and order.updated_at >= requested_at:
                    logger.debug(
                        "Order %s changed after snapshot was requested; keeping it", cid,
                    )
                    continue
            final = OrderStatus.CANCELLED if order.status is OrderStatus.CANCELLING else OrderStatus.EXPIRED
            logger.warning(
                "Order %s (%s) missing from exchange snapshot; marking %s",
                cid, order.status.value, final.value,
            )
            self._replace(order, replace(
                order, status=final, pending_action=None,
                reject_reason="missing_from_snapshot", updated_at=now,
            ))

        self._position = replace(
            snapshot.position,
            realized_pnl=self._position.realized_pnl,
            fees=self._position.fees,
        )
        self._bump()
        logger.info(
            "Tracker resynced: %d open orders, net position %s",
            len(self._orders), self._position.net_size,
        )

    def restore_pnl(self, realized_pnl: Decimal, fees: Decimal = Decimal("0")) -> None:
        """Carry realized PnL across a restart."""
        self._position = replace(self._position, realized_pnl=realized_pnl, fees=fees)
        self._bump()

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def snapshot(self) -> TrackerSnapshot:
        if self._snapshot is None or self._snapshot.version != self._version:
            self._snapshot = TrackerSnapshot(
                orders=tuple(self._orders.values()),
                position=self._position,
                version=self._version,
            )
        return self._snapshot

    @property
    def position(self) -> Position:
        return self._position

    @property
    def version(self) -> int:
        return self._version

    def get(self, client_order_id: str) -> Optional[ManagedOrder]:
        return self._orders.get(client_order_id) or self._history.get(client_order_id)

    def find_by_exchange_id(self, exchange_order_id: str) -> Optional[ManagedOrder]:
        cid = self._by_exchange_id.get(str(exchange_order_id))
        return None if cid is None else self.get(cid)

    def open_orders(self) -> List[ManagedOrder]:
        return list(self._orders.values())

    def open_order_count(self) -> int:
        return len(self._orders)

    def bindings(self) -> Dict[str, LevelKey]:
        """client_order_id -> level key for every bound non-terminal order."""
        return {
            o.client_order_id: o.level_key
            for o in self._orders.values()
            if o.level_key is not None
        }

    def stale_pending(self, max_age_s: float) -> List[ManagedOrder]:
        """PENDING orders older than *max_age_s* that never got an ack."""
        now = time.monotonic()
        return [
            o for o in self._orders.values()
            if o.status is OrderStatus.PENDING and (now - o.created_at) >= max_age_s
        ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve_client_id(self, event: ExecutionEvent) -> Optional[str]:
        if event.client_order_id:
            if event.client_order_id in self._orders or event.client_order_id in self._history:
                return event.client_order_id
        if event.exchange_order_id:
            cid = self._by_exchange_id.get(str(event.exchange_order_id))
            if cid is not None:
                return cid
        return event.client_order_id

    def _install(self, order: ManagedOrder) -> None:
        if order.is_terminal:
            self._remember(order)
        else:
            self._orders[order.client_order_id] = order
            if order.level_key is not None:
                self._by_level[order.level_key] = order.client_order_id
        if order.exchange_order_id:
            self._by_exchange_id[order.exchange_order_id] = order.client_order_id

    def _replace(self, old: ManagedOrder, new: ManagedOrder) -> None:
        cid = old.client_order_id
        self._orders.pop(cid, None)
        self._history.pop(cid, None)
        if old.level_key is not None and self._by_level.get(old.level_key) == cid:
            del self._by_level[old.level_key]
        self._install(new)

    def _remember(self, order: ManagedOrder) -> None:
        self._history[order.client_order_id] = order
        self._history.move_to_end(order.client_order_id)
        while len(self._history) > self._history_size:
            evicted_id, evicted = self._history.popitem(last=False)
            if evicted.exchange_order_id:
                self._by_exchange_id.pop(evicted.exchange_order_id, None)

    def _bump(self) -> None:
        self._version += 1

    def _notify(self, order: ManagedOrder, kind: EventKind) -> None:
        for cb in self._listeners:
            try:
                cb(order, kind)
            except Exception as exc:
                logger.error("Order change callback error: %s", exc)
