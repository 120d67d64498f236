"""
Grid Runner

Wires the grid core together and owns its background tasks:

* market-data consumer   -> ``OrderBookCache``
* execution-report consumer -> ``OrderStateTracker``
* reconciliation loop: ladder -> reconcile -> risk filter -> dispatch

The loop runs every ``reconcile_interval_s`` or earlier when woken by a
fill, reject, expiry, cancel confirmation or a recenter-worthy price move;
wake-ups inside ``reconcile_debounce_s`` are coalesced into one cycle.

Both stream consumers reconnect with exponential backoff and jitter and
resync from a REST snapshot after every reconnect or detected gap.

``start()`` / ``stop()`` are the process boundary; ``run()`` is the CLI.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import random
import signal
import sys
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from .book_cache import OrderBookCache
from .config import GridSettings, load_settings
from .config_env import CenterMode
from .dispatcher import DispatchReport, ExecutionDispatcher
from .errors import ConfigurationError, RiskHalt, StaleDataError
from .gateway import ExchangeGateway
from .ladder import PriceLadder
from .order_tracker import OrderStateTracker
from .reconciler import ReconcilePolicy, reconcile
from .risk_guard import RiskGuard
from .state_store import GridState, StateStore
from .types import EventKind, LevelKey, ManagedOrder, OrderStatus
from .utils import round_down_to_step

logger = logging.getLogger(__name__)

# Backoff constants for stream reconnection.
_STREAM_BACKOFF_BASE_S = 2.0
_STREAM_BACKOFF_MAX_S = 120.0
_STREAM_JITTER_MAX_S = 1.0

_STOP_CANCEL_ROUNDS = 2
_STALE_LOG_INTERVAL_S = 10.0

_WAKE_EVENTS = frozenset({
    EventKind.FILL,
    EventKind.REJECT,
    EventKind.EXPIRE,
    EventKind.CANCELLED,
    EventKind.CANCEL_REJECT,
    EventKind.AMEND_REJECT,
})


class RunningGrid:
    """Handle to a started grid: its components and background tasks."""

    def __init__(
        self,
        settings: GridSettings,
        gateway: ExchangeGateway,
        *,
        state_store: Optional[StateStore] = None,
        stream_backoff_base_s: float = _STREAM_BACKOFF_BASE_S,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.tracker = OrderStateTracker()
        self.book = OrderBookCache(
            settings.market_name,
            staleness_threshold_s=settings.market_data_staleness_s,
        )
        self.ladder = PriceLadder(settings)
        self.guard = RiskGuard(settings)
        self.dispatcher = ExecutionDispatcher(gateway, self.tracker, settings)
        self.policy = ReconcilePolicy.from_settings(
            settings, supports_amend=bool(getattr(gateway, "supports_amend", False)),
        )
        self.state_store = state_store
        self.last_report: Optional[DispatchReport] = None
        self.cycles = 0

        self._stream_backoff_base_s = stream_backoff_base_s
        self._wake = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._dispatch_tasks: List[asyncio.Task] = []
        self._stopping = False
        self._resync_requested = False
        self._restored_bindings: Dict[str, LevelKey] = {}
        self._last_save_ts = 0.0
        self._saved_generation: Optional[int] = None
        self._last_stale_log_ts = 0.0

        self.tracker.on_change(self._on_order_change)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _bootstrap(self) -> None:
        settings = self.settings
        state = self._load_state()

        if settings.center_mode == CenterMode.FIXED:
            center = settings.center_price
            if state is not None and state.reference_price == center:
                self.ladder.restore(center, state.generation)
            elif state is not None and state.reference_price is not None:
                self.ladder.restore(center, state.generation + 1)
            else:
                self.ladder.build(center)
        elif state is not None and state.reference_price is not None:
            self.ladder.restore(state.reference_price, state.generation)

        await self.resync_orders(bindings=self._restored_bindings)
        await self._resync_market()

        # Validate the ladder shape against the live price before any order.
        if self.ladder.current is None:
            mid = self.book.mid()
            if mid is not None:
                self.ladder.build(mid)

    def _launch(self) -> None:
        self._tasks = [
            asyncio.create_task(self._market_loop(), name="grid-market-stream"),
            asyncio.create_task(self._execution_loop(), name="grid-execution-stream"),
            asyncio.create_task(self._reconcile_loop(), name="grid-reconcile"),
        ]
        ladder = self.ladder.current
        logger.info(
            "Grid running: market=%s mode=%s levels/side=%d reference=%s generation=%s amend=%s",
            self.settings.market_name,
            self.settings.center_mode.value,
            self.settings.levels_per_side,
            ladder.reference_price if ladder else None,
            ladder.generation if ladder else None,
            self.policy.allow_amend,
        )
        self.wake()

    async def shutdown(self) -> List[str]:
        """Stop the loops, cancel resting orders, persist state.

        Returns client ids of orders that could not be cancelled.
        """
        if self._stopping:
            return []
        self._stopping = True
        logger.info("Grid shutting down...")

        await _cancel_tasks([t for t in self._tasks if t.get_name() == "grid-reconcile"])
        if self._dispatch_tasks:
            _, pending = await asyncio.wait(
                self._dispatch_tasks, timeout=self.settings.dispatch_timeout_s,
            )
            await _cancel_tasks(list(pending))
        self._dispatch_tasks.clear()

        survivors: List[str] = []
        for attempt in range(_STOP_CANCEL_ROUNDS):
            try:
                await self.resync_orders()
            except Exception as exc:
                logger.warning("Pre-cancel resync failed: %s", exc)
            survivors = await self.dispatcher.cancel_all("shutdown")
            if not survivors:
                break
            logger.warning(
                "Cancel round %d left %d order(s) live: %s",
                attempt + 1, len(survivors), survivors,
            )
        for cid in survivors:
            order = self.tracker.get(cid)
            logger.error(
                "Order could not be cancelled on shutdown: client_id=%s exch_id=%s status=%s",
                cid,
                order.exchange_order_id if order else None,
                order.status.value if order else None,
            )

        await _cancel_tasks(self._tasks)
        self._tasks.clear()
        self.save_state(force=True)
        try:
            await self.gateway.close()
        except Exception as exc:
            logger.warning("Error closing gateway: %s", exc)
        logger.info(
            "Grid stopped: net position %s, realized PnL %s",
            self.tracker.position.net_size, self.tracker.position.realized_pnl,
        )
        return survivors

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def wake(self) -> None:
        """Request an eager reconciliation cycle."""
        self._wake.set()

    def halt(self, reason: str) -> None:
        self.guard.halt(reason)
        self.wake()

    def clear_halt(self) -> None:
        self.guard.clear()
        self.save_state(force=True)
        self.wake()

    def update_settings(self, settings: GridSettings) -> None:
        """Apply new sizing, tolerance and risk parameters to a running grid.

        Level identity (market, level count, spacing, center mode) cannot
        change while orders rest on it; that needs a restart.  Resting
        orders converge on the re-derived levels through amends where the
        gateway supports them and cancel/replace otherwise.
        """
        if settings.fingerprint() != self.settings.fingerprint():
            raise ConfigurationError("grid layout changed; restart the grid to apply it")
        if self.ladder.current is not None:
            self.ladder.rebuild(settings)
        else:
            self.ladder = PriceLadder(settings)
        self.settings = settings
        self.guard.update_settings(settings)
        self.policy = ReconcilePolicy.from_settings(
            settings, supports_amend=bool(getattr(self.gateway, "supports_amend", False)),
        )
        logger.info("Grid settings updated (amend=%s)", self.policy.allow_amend)
        self.wake()

    @property
    def halted(self) -> bool:
        return self.guard.halted

    def status(self) -> Dict[str, Any]:
        snapshot = self.tracker.snapshot()
        ladder = self.ladder.current
        return {
            "market": self.settings.market_name,
            "reference_price": ladder.reference_price if ladder else None,
            "generation": ladder.generation if ladder else None,
            "open_orders": len(snapshot.orders),
            "net_position": snapshot.position.net_size,
            "realized_pnl": snapshot.position.realized_pnl,
            "halted": self.guard.halt_reason,
            "cycles": self.cycles,
            "dispatch": self.dispatcher.stats(),
        }

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _reconcile_loop(self) -> None:
        interval = self.settings.reconcile_interval_s
        debounce = self.settings.reconcile_debounce_s
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._wake.is_set() and debounce > 0:
                await asyncio.sleep(debounce)
            self._wake.clear()
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Reconcile cycle failed: %s", exc, exc_info=True)

    async def run_cycle(self) -> None:
        """One reconcile -> filter -> dispatch pass.

        The dispatch itself runs as a background task so the next cycle can
        supersede stale retries; call ``wait_dispatch()`` to await it.
        """
        self.cycles += 1
        if self._resync_requested or self.tracker.stale_pending(self.settings.pending_order_grace_s):
            self._resync_requested = False
            await self.resync_orders()

        if self.settings.center_mode == CenterMode.MID_TRACKING:
            mid = self.book.mid()
            if mid is None:
                self._log_stale_market()
                if self.guard.halted:
                    await self._enforce_halt(RiskHalt(self.guard.halt_reason or "halted"))
                return
            try:
                self.ladder.maybe_recenter(mid)
            except ConfigurationError as exc:
                logger.error("Ladder recompute failed at reference %s: %s", mid, exc)
                return

        snapshot = self.tracker.snapshot()
        plan = reconcile(self.ladder.current, snapshot, self.policy)
        try:
            plan = self.guard.filter(plan, snapshot)
        except RiskHalt as exc:
            await self._enforce_halt(exc)
            return

        self._maybe_save_on_change()
        if not plan:
            self.save_state()
            return

        task = asyncio.create_task(self.dispatcher.execute(plan), name=f"grid-dispatch-{self.cycles}")
        task.add_done_callback(self._on_dispatch_done)
        self._dispatch_tasks.append(task)

    async def wait_dispatch(self) -> Optional[DispatchReport]:
        """Await every dispatch started so far; return the last report."""
        while True:
            pending = [t for t in self._dispatch_tasks if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        return self.last_report

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        if task in self._dispatch_tasks:
            self._dispatch_tasks.remove(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Dispatch task failed: %s", exc, exc_info=exc)
            return
        report = task.result()
        self.last_report = report
        if report.rejected or report.failures:
            self._resync_requested = True
            self.wake()

    async def _enforce_halt(self, exc: RiskHalt) -> None:
        live = [
            o for o in self.tracker.open_orders()
            if o.status is not OrderStatus.CANCELLING and o.exchange_order_id is not None
        ]
        if not live:
            return
        logger.critical("Risk halt active (%s): cancelling %d resting order(s)", exc.reason, len(live))
        survivors = await self.dispatcher.cancel_all("risk_halt")
        if survivors:
            logger.error("Risk halt: %d order(s) still live: %s", len(survivors), survivors)
        self.save_state(force=True)

    # ------------------------------------------------------------------
    # Resync
    # ------------------------------------------------------------------

    async def resync_orders(self, bindings: Optional[Dict[str, LevelKey]] = None) -> None:
        # Dispatch may still be running; orders it touches after this point
        # are newer than the snapshot.
        requested_at = time.monotonic()
        snapshot = await self.gateway.fetch_open_orders_snapshot()
        self.tracker.resync(
            snapshot,
            bindings=bindings,
            pending_grace_s=self.settings.pending_order_grace_s,
            requested_at=requested_at,
        )

    async def _resync_market(self) -> None:
        try:
            tick = await self.gateway.fetch_market_snapshot(self.settings.market_name)
        except Exception as exc:
            self.book.invalidate()
            logger.warning("Market snapshot fetch failed: %s", exc)
            return
        self.book.reset_from_snapshot(tick)

    # ------------------------------------------------------------------
    # Stream consumers
    # ------------------------------------------------------------------

    async def _market_loop(self) -> None:
        symbol = self.settings.market_name
        consecutive_failures = 0
        while True:
            try:
                async for tick in self.gateway.stream_market_data(symbol):
                    consecutive_failures = 0
                    try:
                        accepted = self.book.apply_tick(tick)
                    except StaleDataError as exc:
                        logger.warning("Market data gap (%s); refetching snapshot", exc)
                        await self._resync_market()
                        continue
                    if accepted and self._needs_recenter():
                        self.wake()
                reason = "ended"
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                reason = f"error: {exc}"
            if self._stopping:
                return
            consecutive_failures += 1
            delay = self._backoff(consecutive_failures)
            logger.warning("Market data stream %s; reconnecting in %.1fs", reason, delay)
            self.book.invalidate()
            await asyncio.sleep(delay)
            await self._resync_market()

    async def _execution_loop(self) -> None:
        consecutive_failures = 0
        while True:
            try:
                async for event in self.gateway.stream_execution_reports():
                    consecutive_failures = 0
                    self.tracker.apply(event)
                reason = "ended"
            except asyncio.CancelledError:
                raise
            except StaleDataError as exc:
                reason = f"gap ({exc})"
            except Exception as exc:
                reason = f"error: {exc}"
            if self._stopping:
                return
            consecutive_failures += 1
            delay = self._backoff(consecutive_failures)
            logger.error("Execution report stream %s; reconnecting in %.1fs", reason, delay)
            await asyncio.sleep(delay)
            try:
                await self.resync_orders()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Order resync after reconnect failed: %s", exc)
                self._resync_requested = True
            self.wake()

    def _backoff(self, consecutive_failures: int) -> float:
        backoff = min(
            self._stream_backoff_base_s * (2 ** (consecutive_failures - 1)),
            _STREAM_BACKOFF_MAX_S,
        )
        if backoff <= 0:
            return 0.0
        return backoff + random.uniform(0.0, _STREAM_JITTER_MAX_S)

    # ------------------------------------------------------------------
    # Callbacks & helpers
    # ------------------------------------------------------------------

    def _on_order_change(self, order: ManagedOrder, kind: EventKind) -> None:
        if kind in _WAKE_EVENTS:
            self.wake()

    def _needs_recenter(self) -> bool:
        if self.settings.center_mode != CenterMode.MID_TRACKING:
            return False
        mid = self.book.mid()
        return mid is not None and self.ladder.needs_recenter(mid)

    def _log_stale_market(self) -> None:
        now = time.monotonic()
        if now - self._last_stale_log_ts >= _STALE_LOG_INTERVAL_S:
            self._last_stale_log_ts = now
            logger.warning(
                "No usable reference price for %s; skipping reconciliation",
                self.settings.market_name,
            )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_state(self) -> Optional[GridState]:
        if self.state_store is None:
            return None
        state = self.state_store.load(self.settings.market_name, self.settings.fingerprint())
        if state is None:
            return None
        self.tracker.restore_pnl(state.realized_pnl, state.fees)
        self._restored_bindings = dict(state.bindings)
        if state.halted:
            self.guard.halt(state.halt_reason or "restored halt")
        return state

    def _maybe_save_on_change(self) -> None:
        ladder = self.ladder.current
        if ladder is not None and ladder.generation != self._saved_generation:
            self.save_state(force=True)

    def save_state(self, *, force: bool = False) -> None:
        if self.state_store is None:
            return
        now = time.monotonic()
        if not force and (now - self._last_save_ts) < self.settings.state_save_interval_s:
            return
        ladder = self.ladder.current
        position = self.tracker.position
        state = GridState(
            market_name=self.settings.market_name,
            fingerprint=self.settings.fingerprint(),
            reference_price=ladder.reference_price if ladder else None,
            generation=ladder.generation if ladder else 0,
            bindings=self.tracker.bindings(),
            realized_pnl=position.realized_pnl,
            fees=position.fees,
            halted=self.guard.halted,
            halt_reason=self.guard.halt_reason,
        )
        try:
            self.state_store.save(state)
        except OSError as exc:
            logger.error("Failed to save grid state: %s", exc)
            return
        self._last_save_ts = now
        self._saved_generation = state.generation if ladder else None


async def _cancel_tasks(tasks: Sequence[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.warning("Task %s ended with error: %s", task.get_name(), exc)


# ---------------------------------------------------------------------------
# Process boundary
# ---------------------------------------------------------------------------

async def start(
    settings: GridSettings,
    gateway: ExchangeGateway,
    *,
    stream_backoff_base_s: float = _STREAM_BACKOFF_BASE_S,
) -> RunningGrid:
    """Validate, resync and launch a grid.  No order is placed before this returns.

    Raises ``ConfigurationError`` if the ladder cannot be built.
    """
    store = StateStore(settings.state_file) if settings.state_file is not None else None
    grid = RunningGrid(
        settings, gateway,
        state_store=store,
        stream_backoff_base_s=stream_backoff_base_s,
    )
    await grid._bootstrap()
    grid._launch()
    return grid


async def stop(grid: RunningGrid) -> List[str]:
    """Gracefully stop *grid*, cancelling every resting order (best effort)."""
    return await grid.shutdown()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

# Module-level flag for double-signal detection.
_shutdown_in_progress = False


def _configure_logging(settings: GridSettings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """First SIGINT/SIGTERM requests a graceful stop; the second force-exits."""
    global _shutdown_in_progress
    _shutdown_in_progress = False
    loop = asyncio.get_running_loop()

    def _handler() -> None:
        global _shutdown_in_progress
        if _shutdown_in_progress:
            logger.critical("Second signal received during shutdown, force-exiting")
            raise SystemExit(1)
        _shutdown_in_progress = True
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handler)


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="grid_engine",
        description="Run a grid of resting limit orders around a reference price.",
    )
    parser.add_argument(
        "--paper", action="store_true",
        help="Trade against the in-memory paper exchange instead of x10.",
    )
    parser.add_argument(
        "--paper-price", type=Decimal, default=None,
        help="Starting price of the paper market (default: GRID_CENTER_PRICE).",
    )
    parser.add_argument(
        "--paper-volatility-bps", type=Decimal, default=Decimal("5"),
        help="Std-dev of the paper market's per-second random walk, in bps.",
    )
    parser.add_argument("--log-level", default=None, help="Override GRID_LOG_LEVEL.")
    return parser.parse_args(argv)


async def _paper_price_walk(gateway: Any, settings: GridSettings, start_price: Decimal, volatility_bps: Decimal) -> None:
    price = start_price
    sigma = float(volatility_bps) / 10000.0
    while True:
        await asyncio.sleep(1.0)
        price = price * Decimal(str(1.0 + random.gauss(0.0, sigma)))
        gateway.set_price(round_down_to_step(price, settings.tick_size))


async def _build_gateway(settings: GridSettings, args: argparse.Namespace):
    if args.paper:
        from .paper_gateway import PaperGateway

        price = args.paper_price or settings.center_price
        if price is None:
            raise ConfigurationError("--paper needs --paper-price or GRID_CENTER_PRICE")
        return settings, PaperGateway(settings.market_name, initial_price=price)

    from .x10_gateway import X10Gateway, build_trading_client, fetch_trading_rules

    client = build_trading_client(settings)
    try:
        rules = await fetch_trading_rules(client, settings.market_name)
    except BaseException:
        await client.close()
        raise
    updates = {}
    if settings.tick_size == 0:
        updates["tick_size"] = rules.tick_size
    if settings.lot_size == 0:
        updates["lot_size"] = rules.lot_size
    if updates:
        settings = settings.model_copy(update=updates)
    return settings, X10Gateway(settings, client)


async def _main(settings: GridSettings, args: argparse.Namespace) -> int:
    settings, gateway = await _build_gateway(settings, args)
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    try:
        grid = await start(settings, gateway)
    except BaseException:
        await gateway.close()
        raise

    walker: Optional[asyncio.Task] = None
    if args.paper:
        walker = asyncio.create_task(
            _paper_price_walk(
                gateway, settings, args.paper_price or settings.center_price, args.paper_volatility_bps,
            ),
            name="grid-paper-walk",
        )
    try:
        await stop_event.wait()
    finally:
        if walker is not None:
            await _cancel_tasks([walker])
        await stop(grid)
    return 0


def run(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point.  Exit codes: 0 on shutdown, 2 on configuration error."""
    args = _parse_args(argv)
    overrides = {"log_level": args.log_level} if args.log_level else {}
    try:
        settings = load_settings(**overrides)
    except ConfigurationError as exc:
        logging.basicConfig(stream=sys.stderr)
        logger.error("%s", exc)
        return 2

    _configure_logging(settings)
    try:
        return asyncio.run(_main(settings, args))
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except KeyboardInterrupt:
        return 0
