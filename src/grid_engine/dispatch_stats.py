"""Rolling dispatch failure and latency statistics."""
from __future__ import annotations

import time
from collections import deque
from typing import Deque, Dict, Optional


class FailureTracker:
    """Tracks consecutive and rolling-window gateway call failures."""

    def __init__(self) -> None:
        self.consecutive_failures: int = 0
        self._attempt_timestamps: Deque[float] = deque()
        self._failure_timestamps: Deque[float] = deque()

    def record_attempt(self) -> None:
        self._attempt_timestamps.append(time.monotonic())

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        self._failure_timestamps.append(time.monotonic())

    def window_stats(self, window_s: float) -> Dict[str, float]:
        self._prune(window_s)
        attempts = len(self._attempt_timestamps)
        failures = len(self._failure_timestamps)
        rate = float(failures / attempts) if attempts > 0 else 0.0
        return {
            "attempts": float(attempts),
            "failures": float(failures),
            "failure_rate": rate,
        }

    def reset(self) -> None:
        self.consecutive_failures = 0
        self._attempt_timestamps.clear()
        self._failure_timestamps.clear()

    def _prune(self, window_s: float) -> None:
        cutoff = time.monotonic() - max(0.0, float(window_s))
        while self._attempt_timestamps and self._attempt_timestamps[0] < cutoff:
            self._attempt_timestamps.popleft()
        while self._failure_timestamps and self._failure_timestamps[0] < cutoff:
            self._failure_timestamps.popleft()


class LatencyTracker:
    """Rolling window of gateway round-trip latencies (ms), keyed by call id."""

    def __init__(self, maxlen: int = 50) -> None:
        self._samples: Deque[float] = deque(maxlen=maxlen)
        self._send_ts: Dict[str, float] = {}

    def record_send(self, call_id: str) -> None:
        self._send_ts[call_id] = time.monotonic()

    def record_reply(self, call_id: str) -> Optional[float]:
        send_ts = self._send_ts.pop(call_id, None)
        if send_ts is None:
            return None
        latency_ms = (time.monotonic() - send_ts) * 1000.0
        self._samples.append(latency_ms)
        return latency_ms

    def discard(self, call_id: str) -> None:
        self._send_ts.pop(call_id, None)

    def avg_ms(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    def max_ms(self) -> float:
        return max(self._samples) if self._samples else 0.0

    def sample_count(self) -> int:
        return len(self._samples)
