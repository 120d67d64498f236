"""
Risk Guard

Gate between the reconciler and the dispatcher.  ``filter()`` vetoes or
shrinks ``Place`` actions that would push worst-case exposure past
``max_net_position`` or the book past ``max_open_orders``, and raises
``RiskHalt`` while a kill-switch condition holds.

Worst-case exposure on a side is the current net position plus every
resting same-side remaining quantity plus the places already admitted in
this plan, i.e. the position if every bid (or every ask) filled.  Orders
this plan cancels are not counted.

Kill switches latch: once tripped, every ``filter()`` raises until
``clear()`` is called.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import List, Optional, Set

from .config import GridSettings
from .errors import RiskHalt
from .order_tracker import TrackerSnapshot
from .types import Action, ActionPlan, Amend, Cancel, Place, Side
from .utils import round_down_to_step

logger = logging.getLogger(__name__)


@dataclass
class DrawdownState:
    current_pnl: Decimal
    peak_pnl: Decimal
    drawdown: Decimal
    threshold: Decimal
    triggered: bool


class DrawdownStop:
    """Track realized-PnL drawdown from its high watermark."""

    def __init__(self, threshold: Decimal) -> None:
        self._threshold = max(Decimal("0"), Decimal(str(threshold)))
        self._initialised = False
        self._peak_pnl = Decimal("0")
        self._tripped = False

    @property
    def tripped(self) -> bool:
        return self._tripped

    @property
    def peak_pnl(self) -> Decimal:
        return self._peak_pnl

    def evaluate(self, current_pnl: Decimal) -> DrawdownState:
        pnl = Decimal(str(current_pnl))
        if not self._initialised:
            self._peak_pnl = pnl
            self._initialised = True
        else:
            self._peak_pnl = max(self._peak_pnl, pnl)

        drawdown = max(Decimal("0"), self._peak_pnl - pnl)
        should_trip = self._threshold > 0 and drawdown >= self._threshold
        triggered = should_trip and not self._tripped
        if should_trip:
            self._tripped = True
        return DrawdownState(
            current_pnl=pnl,
            peak_pnl=self._peak_pnl,
            drawdown=drawdown,
            threshold=self._threshold,
            triggered=triggered,
        )

    def reset(self) -> None:
        """Re-arm; the next evaluation starts a fresh watermark."""
        self._tripped = False
        self._initialised = False


class RiskGuard:
    """Position/order-count limits plus latched kill switches."""

    def __init__(self, settings: GridSettings) -> None:
        self._settings = settings
        self._drawdown = DrawdownStop(settings.max_drawdown)
        self._halt_reason: Optional[str] = None

    @property
    def halted(self) -> bool:
        return self._halt_reason is not None

    @property
    def halt_reason(self) -> Optional[str]:
        return self._halt_reason

    def update_settings(self, settings: GridSettings) -> None:
        self._settings = settings

    def halt(self, reason: str) -> None:
        """Manual kill switch."""
        if self._halt_reason is None:
            logger.critical("RISK HALT: %s", reason)
        self._halt_reason = reason

    def clear(self) -> None:
        """Release a latched halt.  Only an operator should call this."""
        if self._halt_reason is not None:
            logger.warning("Risk halt cleared (was: %s)", self._halt_reason)
        self._halt_reason = None
        self._drawdown.reset()

    def check_kill_switches(self, snapshot: TrackerSnapshot) -> None:
        """Raise ``RiskHalt`` if a kill switch holds (latching it first)."""
        if self._halt_reason is None:
            realized = snapshot.position.realized_pnl
            max_loss = self._settings.max_realized_loss
            if max_loss > 0 and realized <= -max_loss:
                self.halt(f"realized loss {realized} breached max_realized_loss {max_loss}")
            else:
                state = self._drawdown.evaluate(realized)
                if state.triggered or self._drawdown.tripped:
                    self.halt(
                        f"drawdown {state.drawdown} from peak {state.peak_pnl} "
                        f"breached max_drawdown {state.threshold}"
                    )
        if self._halt_reason is not None:
            raise RiskHalt(self._halt_reason)

    def filter(self, plan: ActionPlan, snapshot: TrackerSnapshot) -> ActionPlan:
        """Return *plan* with unsafe actions removed or shrunk.

        Raises ``RiskHalt`` (dropping the whole plan) while halted.
        """
        self.check_kill_switches(snapshot)

        settings = self._settings
        limit = settings.max_net_position
        cancelled: Set[str] = {
            a.order.client_order_id for a in plan if isinstance(a, Cancel)
        }

        net = snapshot.position.net_size
        resting_buy = Decimal("0")
        resting_sell = Decimal("0")
        open_count = 0
        for order in snapshot.orders:
            if order.is_terminal or order.client_order_id in cancelled:
                continue
            open_count += 1
            if order.side is Side.BUY:
                resting_buy += order.remaining_size
            else:
                resting_sell += order.remaining_size

        long_exposure = net + resting_buy
        short_exposure = -net + resting_sell

        admitted: List[Action] = []
        dropped = 0
        shrunk = 0
        for action in plan:
            if isinstance(action, Cancel):
                admitted.append(action)
                continue

            if isinstance(action, Amend):
                if action.new_size is None or action.new_size <= action.order.size:
                    admitted.append(action)
                    continue
                increase = action.new_size - action.order.size
                current = long_exposure if action.order.side is Side.BUY else short_exposure
                if current + increase > limit:
                    logger.warning(
                        "Risk: dropping amend of %s to size %s (worst-case %s > %s)",
                        action.order.client_order_id, action.new_size,
                        current + increase, limit,
                    )
                    dropped += 1
                    continue
                if action.order.side is Side.BUY:
                    long_exposure += increase
                else:
                    short_exposure += increase
                admitted.append(action)
                continue

            if not isinstance(action, Place):
                admitted.append(action)
                continue

            level = action.level
            if open_count >= settings.max_open_orders:
                logger.warning(
                    "Risk: dropping place %s level %d, open orders at limit %d",
                    level.side.value, level.level_index, settings.max_open_orders,
                )
                dropped += 1
                continue

            current = long_exposure if level.side is Side.BUY else short_exposure
            headroom = limit - current
            size = level.target_size
            if size > headroom:
                size = round_down_to_step(max(headroom, Decimal("0")), settings.lot_size)
                if size <= 0:
                    logger.warning(
                        "Risk: dropping place %s level %d size %s (worst-case %s > %s)",
                        level.side.value, level.level_index, level.target_size,
                        current + level.target_size, limit,
                    )
                    dropped += 1
                    continue
                logger.info(
                    "Risk: shrinking place %s level %d from %s to %s",
                    level.side.value, level.level_index, level.target_size, size,
                )
                shrunk += 1
                action = Place(replace(level, target_size=size), capped=True)

            if level.side is Side.BUY:
                long_exposure += size
            else:
                short_exposure += size
            open_count += 1
            admitted.append(action)

        if dropped or shrunk:
            logger.info(
                "Risk filter: %d action(s) admitted, %d dropped, %d shrunk",
                len(admitted), dropped, shrunk,
            )
        return tuple(admitted)
