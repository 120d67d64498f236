from __future__ import annotations

import os
import sys
from decimal import Decimal

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
SRC_PATH = os.path.join(PROJECT_ROOT, "src")

if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

# Keep tests deterministic: do not load developer-local GRID_* values.
os.environ["ENV"] = "env.test"
for key in list(os.environ.keys()):
    if key.startswith("GRID_"):
        os.environ.pop(key, None)

from grid_engine.config import GridSettings  # noqa: E402


@pytest.fixture(autouse=True)
def _restore_environment() -> None:
    """Prevent environment mutations from leaking across tests."""
    snapshot = os.environ.copy()
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(snapshot)


def make_settings(**overrides) -> GridSettings:
    """Settings for a small fixed-center arithmetic grid around 100."""
    base = dict(
        market_name="TEST-USD",
        center_mode="fixed",
        center_price=Decimal("100"),
        levels_per_side=3,
        spacing_mode="arithmetic",
        spacing_step=Decimal("1"),
        level_size=Decimal("1"),
        tick_size=Decimal("0.01"),
        lot_size=Decimal("0.001"),
        price_tolerance_bps=Decimal("1"),
        size_tolerance_pct=Decimal("1"),
        max_net_position=Decimal("100"),
        max_open_orders=100,
        retry_max_attempts=3,
        retry_base_delay_s=0.1,
        retry_max_delay_s=1.0,
        dispatch_timeout_s=1.0,
        reconcile_interval_s=0.05,
        reconcile_debounce_s=0.0,
        pending_order_grace_s=30.0,
    )
    base.update(overrides)
    return GridSettings(_env_file=None, **base)


@pytest.fixture
def settings() -> GridSettings:
    return make_settings()
