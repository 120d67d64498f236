from __future__ import annotations

import grid_engine.dispatch_stats as dispatch_stats
from grid_engine.dispatch_stats import FailureTracker, LatencyTracker


def test_latency_tracker_records_round_trips(monkeypatch) -> None:
    now = 1000.0

    def _mono() -> float:
        return now

    monkeypatch.setattr(dispatch_stats.time, "monotonic", _mono)

    tracker = LatencyTracker(maxlen=10)
    tracker.record_send("a")
    now = 1000.050
    lat_a = tracker.record_reply("a")
    assert lat_a is not None
    assert abs(lat_a - 50.0) < 1e-6

    tracker.record_send("b")
    now = 1000.200
    tracker.record_reply("b")

    assert tracker.sample_count() == 2
    assert abs(tracker.max_ms() - 150.0) < 1e-6
    assert abs(tracker.avg_ms() - 100.0) < 1e-6


def test_latency_reply_without_send_is_ignored() -> None:
    tracker = LatencyTracker()
    assert tracker.record_reply("never-sent") is None
    tracker.record_send("x")
    tracker.discard("x")
    assert tracker.record_reply("x") is None
    assert tracker.sample_count() == 0
    assert tracker.avg_ms() == 0.0


def test_failure_tracker_window_and_consecutive(monkeypatch) -> None:
    now = 500.0

    def _mono() -> float:
        return now

    monkeypatch.setattr(dispatch_stats.time, "monotonic", _mono)

    failures = FailureTracker()
    for _ in range(4):
        failures.record_attempt()
    failures.record_failure()
    failures.record_failure()
    assert failures.consecutive_failures == 2
    assert failures.window_stats(60.0)["failure_rate"] == 0.5

    failures.record_success()
    assert failures.consecutive_failures == 0

    now = 600.0
    stats = failures.window_stats(60.0)
    assert stats["attempts"] == 0.0
    assert stats["failure_rate"] == 0.0
