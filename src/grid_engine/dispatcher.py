"""
Execution Dispatcher

Sends an ``ActionPlan`` to the gateway and feeds every outcome back into
the order tracker.

* At most ``max_inflight_dispatch`` gateway calls are in flight; excess
  calls queue FIFO on an ``asyncio.Semaphore``.
* The cancel/amend phase completes before the place phase starts.
* Every place carries a fresh client order id and is registered with the
  tracker as PENDING *before* the call, so a stream ack that beats the
  REST reply still finds its order, and a retried submission cannot
  create a duplicate on a venue that de-duplicates on that id.
* ``TransportError`` and call timeouts are retried with exponential
  backoff.  Exhaustion surfaces a ``DispatchFailure`` for that action only.
* Each ``execute()`` opens a new epoch; a retry whose epoch has been
  superseded is abandoned instead of being sent against stale state.

A place that never got an answer stays PENDING in the tracker: a late ack
may still arrive, and a REST resync expires it if the exchange never saw it.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Tuple

from .config import GridSettings
from .dispatch_stats import FailureTracker, LatencyTracker
from .errors import DispatchFailure, TransportError
from .gateway import ExchangeGateway, GatewayReject, GatewayResult
from .order_tracker import OrderStateTracker
from .types import (
    Action,
    ActionPlan,
    Amend,
    Cancel,
    EventKind,
    ExecutionEvent,
    ManagedOrder,
    OrderStatus,
    Place,
)

logger = logging.getLogger(__name__)

_FAILURE_WINDOW_S = 60.0


@dataclass
class DispatchReport:
    """Outcome of one ``execute()`` or ``cancel_all()`` call."""

    epoch: int
    placed: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    amended: List[str] = field(default_factory=list)
    rejected: List[Tuple[str, str]] = field(default_factory=list)
    failures: List[DispatchFailure] = field(default_factory=list)
    skipped: int = 0

    @property
    def ok(self) -> bool:
        return not self.rejected and not self.failures

    def summary(self) -> dict:
        return {
            "epoch": self.epoch,
            "placed": len(self.placed),
            "cancelled": len(self.cancelled),
            "amended": len(self.amended),
            "rejected": len(self.rejected),
            "failed": len(self.failures),
            "skipped": self.skipped,
        }


class ExecutionDispatcher:
    """Bounded-concurrency, retrying executor for action plans."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        tracker: OrderStateTracker,
        settings: GridSettings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._gateway = gateway
        self._tracker = tracker
        self._settings = settings
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(settings.max_inflight_dispatch)
        self._epoch = 0
        self._inflight = 0
        self.failures = FailureTracker()
        self.latency = LatencyTracker()

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def inflight(self) -> int:
        return self._inflight

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        delay = self._settings.retry_base_delay_s * (2 ** (attempt - 1))
        return min(delay, self._settings.retry_max_delay_s)

    def new_client_order_id(self) -> str:
        return f"{self._settings.client_order_prefix}-{uuid.uuid4().hex}"

    def stats(self) -> dict:
        window = self.failures.window_stats(_FAILURE_WINDOW_S)
        return {
            "epoch": self._epoch,
            "inflight": self._inflight,
            "consecutive_failures": self.failures.consecutive_failures,
            "failure_rate": window["failure_rate"],
            "avg_latency_ms": round(self.latency.avg_ms(), 1),
            "max_latency_ms": round(self.latency.max_ms(), 1),
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(self, plan: ActionPlan) -> DispatchReport:
        """Dispatch *plan*, superseding any still-retrying earlier plan."""
        self._epoch += 1
        epoch = self._epoch
        report = DispatchReport(epoch=epoch)

        modify = [a for a in plan if not isinstance(a, Place)]
        places = [a for a in plan if isinstance(a, Place)]
        if modify:
            await self._run_phase(modify, epoch, report)
        if places:
            if epoch != self._epoch:
                for action in places:
                    report.failures.append(DispatchFailure(action, "superseded", 0))
            else:
                await self._run_phase(places, epoch, report)

        if plan:
            logger.info("Dispatch epoch %d: %s", epoch, report.summary())
        return report

    async def cancel_all(self, reason: str = "shutdown") -> List[str]:
        """Cancel every live order the tracker knows about.

        Supersedes any in-flight plan.  Returns the client ids of orders that
        could not be cancelled (no exchange id yet, rejected, or retries
        exhausted).
        """
        self._epoch += 1
        epoch = self._epoch
        report = DispatchReport(epoch=epoch)
        survivors: List[str] = []

        cancels: List[Action] = []
        for order in self._tracker.open_orders():
            if order.status is OrderStatus.CANCELLING:
                continue
            if order.exchange_order_id is None:
                survivors.append(order.client_order_id)
                continue
            cancels.append(Cancel(order, reason=reason))

        logger.info(
            "Cancelling all orders (%s): %d to cancel, %d without exchange id",
            reason, len(cancels), len(survivors),
        )
        if cancels:
            await self._run_phase(cancels, epoch, report)

        survivors.extend(cid for cid, _ in report.rejected)
        survivors.extend(
            f.action.order.client_order_id for f in report.failures
            if isinstance(f.action, Cancel)
        )
        return survivors

    # ------------------------------------------------------------------
    # Phases and actions
    # ------------------------------------------------------------------

    async def _run_phase(self, actions: List[Action], epoch: int, report: DispatchReport) -> None:
        await asyncio.gather(*(self._run(action, epoch, report) for action in actions))

    async def _run(self, action: Action, epoch: int, report: DispatchReport) -> None:
        try:
            if isinstance(action, Place):
                await self._place(action, epoch, report)
            elif isinstance(action, Cancel):
                await self._cancel(action, epoch, report)
            elif isinstance(action, Amend):
                await self._amend(action, epoch, report)
            else:
                raise DispatchFailure(action, f"unknown action {type(action).__name__}")
        except DispatchFailure as exc:
            report.failures.append(exc)
            logger.warning("%s: %s", _describe(action), exc)

    async def _place(self, action: Place, epoch: int, report: DispatchReport) -> None:
        level = action.level
        cid = self.new_client_order_id()
        order = ManagedOrder(
            client_order_id=cid,
            side=level.side,
            price=level.price,
            size=level.target_size,
            level_index=level.level_index,
            generation=level.generation,
            size_capped=action.capped,
        )
        if not self._tracker.track_new(order):
            report.skipped += 1
            return

        try:
            result = await self._call(
                action, epoch, cid,
                lambda: self._gateway.place_order(cid, level.side, level.price, level.target_size),
            )
        except DispatchFailure as exc:
            self._feed(EventKind.DISPATCH_TIMEOUT, cid, reason=exc.reason)
            raise

        if isinstance(result, GatewayReject):
            self._feed(EventKind.REJECT, cid, reason=result.reason)
            report.rejected.append((cid, result.reason))
            logger.warning(
                "Order rejected: side=%s price=%s size=%s level=%d reason=%s",
                level.side.value, level.price, level.target_size, level.level_index,
                result.reason,
            )
            return

        self._feed(EventKind.ACK, cid, exchange_order_id=result.exchange_order_id)
        report.placed.append(cid)
        logger.info(
            "Order placed: side=%s price=%s size=%s level=%d gen=%d client_id=%s exch_id=%s",
            level.side.value, level.price, level.target_size, level.level_index,
            level.generation, cid, result.exchange_order_id,
        )

    async def _cancel(self, action: Cancel, epoch: int, report: DispatchReport) -> None:
        order = action.order
        cid = order.client_order_id
        exchange_id = order.exchange_order_id
        if exchange_id is None:
            raise DispatchFailure(action, "no exchange order id", 0)

        self._feed(EventKind.CANCEL_SUBMITTED, cid)
        try:
            result = await self._call(
                action, epoch, cid, lambda: self._gateway.cancel_order(exchange_id),
            )
        except DispatchFailure as exc:
            self._feed(EventKind.DISPATCH_TIMEOUT, cid, reason=exc.reason)
            raise

        if isinstance(result, GatewayReject):
            self._feed(EventKind.CANCEL_REJECT, cid, reason=result.reason)
            report.rejected.append((cid, result.reason))
            logger.warning(
                "Cancel rejected: client_id=%s exch_id=%s reason=%s",
                cid, exchange_id, result.reason,
            )
            return

        self._feed(EventKind.CANCEL_ACK, cid)
        report.cancelled.append(cid)
        logger.info(
            "Order cancel requested: client_id=%s exch_id=%s reason=%s",
            cid, exchange_id, action.reason,
        )

    async def _amend(self, action: Amend, epoch: int, report: DispatchReport) -> None:
        order = action.order
        cid = order.client_order_id
        exchange_id = order.exchange_order_id
        if exchange_id is None:
            raise DispatchFailure(action, "no exchange order id", 0)

        self._feed(EventKind.AMEND_SUBMITTED, cid)
        try:
            result = await self._call(
                action, epoch, cid,
                lambda: self._gateway.amend_order(exchange_id, action.new_price, action.new_size),
            )
        except DispatchFailure as exc:
            self._feed(EventKind.DISPATCH_TIMEOUT, cid, reason=exc.reason)
            raise

        if isinstance(result, GatewayReject):
            self._feed(EventKind.AMEND_REJECT, cid, reason=result.reason)
            report.rejected.append((cid, result.reason))
            logger.warning(
                "Amend rejected: client_id=%s exch_id=%s reason=%s",
                cid, exchange_id, result.reason,
            )
            return

        self._feed(
            EventKind.AMEND_ACK, cid,
            new_price=action.new_price, new_size=action.new_size,
        )
        report.amended.append(cid)
        logger.info(
            "Order amended: client_id=%s price %s -> %s size %s -> %s",
            cid, order.price, action.new_price or order.price,
            order.size, action.new_size or order.size,
        )

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    async def _call(
        self,
        action: Action,
        epoch: int,
        call_id: str,
        call: Callable[[], Awaitable[GatewayResult]],
    ) -> GatewayResult:
        max_attempts = self._settings.retry_max_attempts
        attempts = 0
        while True:
            if attempts > 0 and epoch != self._epoch:
                raise DispatchFailure(action, "superseded", attempts)
            attempts += 1
            self.failures.record_attempt()

            async with self._semaphore:
                self._inflight += 1
                self.latency.record_send(call_id)
                try:
                    result = await asyncio.wait_for(call(), timeout=self._settings.dispatch_timeout_s)
                except asyncio.TimeoutError:
                    reason = f"timeout after {self._settings.dispatch_timeout_s}s"
                except TransportError as exc:
                    reason = f"transport error: {exc}"
                except Exception as exc:
                    self.latency.discard(call_id)
                    self.failures.record_failure()
                    logger.error("%s: unexpected gateway error", _describe(action), exc_info=True)
                    raise DispatchFailure(action, f"gateway error: {exc}", attempts) from exc
                else:
                    self.latency.record_reply(call_id)
                    self.failures.record_success()
                    return result
                finally:
                    self._inflight -= 1

            self.latency.discard(call_id)
            self.failures.record_failure()
            if attempts >= max_attempts:
                raise DispatchFailure(action, reason, attempts)

            delay = self.backoff_delay(attempts)
            logger.warning(
                "%s failed (%s), retry %d/%d in %.2fs",
                _describe(action), reason, attempts, max_attempts - 1, delay,
            )
            await self._sleep(delay)

    def _feed(self, kind: EventKind, client_order_id: str, **fields) -> None:
        self._tracker.apply(ExecutionEvent(kind=kind, client_order_id=client_order_id, **fields))


def _describe(action: Action) -> str:
    if isinstance(action, Place):
        lvl = action.level
        return f"place {lvl.side.value} level={lvl.level_index} price={lvl.price}"
    if isinstance(action, Cancel):
        return f"cancel {action.order.client_order_id}"
    if isinstance(action, Amend):
        return f"amend {action.order.client_order_id}"
    return repr(action)
