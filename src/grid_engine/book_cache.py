"""
Order Book Snapshot Cache

Holds the latest best bid / best ask / last trade price derived from the
gateway's market-data stream and feeds the reference price to the ladder.

Ticks carry a monotonically increasing sequence number.  Duplicates and
stale ticks are dropped; a skipped sequence marks the cache stale and raises
``StaleDataError`` so the consumer refetches a REST snapshot before resuming.
Independently of sequencing, data older than ``staleness_threshold_s`` is
treated as stale and ``mid()`` returns None.
"""
from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Optional

from .errors import StaleDataError
from .types import MarketTick

logger = logging.getLogger(__name__)

_DEFAULT_STALENESS_THRESHOLD_S = 15.0
_DEFAULT_STALE_LOG_INTERVAL_S = 5.0


class OrderBookCache:
    """Top-of-book cache with gap and staleness detection."""

    def __init__(
        self,
        symbol: str,
        *,
        staleness_threshold_s: float = _DEFAULT_STALENESS_THRESHOLD_S,
    ) -> None:
        self._symbol = symbol
        self._staleness_threshold_s = staleness_threshold_s

        self._best_bid: Optional[Decimal] = None
        self._best_ask: Optional[Decimal] = None
        self._last_trade: Optional[Decimal] = None
        self._last_seq: Optional[int] = None
        self._last_update_ts: float = 0.0
        self._gap_detected: bool = False

        self._last_stale_log_ts: float = 0.0
        self._stale_log_interval_s: float = _DEFAULT_STALE_LOG_INTERVAL_S

        # Set on every accepted tick; consumers clear it themselves.
        self.updated: asyncio.Event = asyncio.Event()

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def apply_tick(self, tick: MarketTick) -> bool:
        """Apply one streamed tick.

        Returns True if the tick was accepted, False if it was a duplicate or
        arrived out of order.  Raises ``StaleDataError`` on a sequence gap.
        """
        if self._gap_detected:
            raise StaleDataError(
                f"market data for {self._symbol} awaits a snapshot refetch",
                expected=None if self._last_seq is None else self._last_seq + 1,
                received=tick.sequence,
            )
        if self._last_seq is not None:
            if tick.sequence <= self._last_seq:
                logger.debug(
                    "Dropping stale tick for %s: seq=%d last=%d",
                    self._symbol, tick.sequence, self._last_seq,
                )
                return False
            if tick.sequence != self._last_seq + 1:
                self._gap_detected = True
                logger.warning(
                    "Market data gap for %s: expected seq=%d received=%d",
                    self._symbol, self._last_seq + 1, tick.sequence,
                )
                raise StaleDataError(
                    f"market data gap for {self._symbol}",
                    expected=self._last_seq + 1,
                    received=tick.sequence,
                )
        self._store(tick)
        return True

    def reset_from_snapshot(self, tick: MarketTick) -> None:
        """Install a REST snapshot and resume sequencing from its sequence."""
        self._gap_detected = False
        self._store(tick)
        logger.info(
            "Market data resynced for %s at seq=%d (bid=%s ask=%s)",
            self._symbol, tick.sequence, self._best_bid, self._best_ask,
        )

    def invalidate(self) -> None:
        """Force a snapshot refetch before any further tick is accepted."""
        self._gap_detected = True

    def _store(self, tick: MarketTick) -> None:
        if tick.best_bid is not None:
            self._best_bid = tick.best_bid
        if tick.best_ask is not None:
            self._best_ask = tick.best_ask
        if tick.last_trade_price is not None:
            self._last_trade = tick.last_trade_price
        self._last_seq = tick.sequence
        self._last_update_ts = time.monotonic()
        self.updated.set()

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    @property
    def last_sequence(self) -> Optional[int]:
        return self._last_seq

    @property
    def awaiting_resync(self) -> bool:
        return self._gap_detected

    def best_bid(self) -> Optional[Decimal]:
        return None if self.is_stale() else self._best_bid

    def best_ask(self) -> Optional[Decimal]:
        return None if self.is_stale() else self._best_ask

    def last_trade_price(self) -> Optional[Decimal]:
        return None if self.is_stale() else self._last_trade

    def mid(self) -> Optional[Decimal]:
        """Mid of the best bid/ask, falling back to the last trade price."""
        if self._is_stale(log_warning=True):
            return None
        bid, ask = self._best_bid, self._best_ask
        if bid is not None and ask is not None and bid > 0 and ask > 0 and bid <= ask:
            return (bid + ask) / Decimal("2")
        return self._last_trade

    def seconds_since_update(self) -> Optional[float]:
        if self._last_update_ts == 0.0:
            return None
        return max(0.0, time.monotonic() - self._last_update_ts)

    def is_stale(self) -> bool:
        return self._is_stale(log_warning=False)

    def _is_stale(self, *, log_warning: bool) -> bool:
        if self._gap_detected or self._last_update_ts == 0.0:
            return True
        elapsed = time.monotonic() - self._last_update_ts
        if elapsed <= self._staleness_threshold_s:
            return False
        if log_warning:
            now = time.monotonic()
            if (now - self._last_stale_log_ts) >= self._stale_log_interval_s:
                logger.warning(
                    "Market data stale for %s (%.1fs since last update)",
                    self._symbol, elapsed,
                )
                self._last_stale_log_ts = now
        return True
