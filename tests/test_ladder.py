from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import make_settings
from grid_engine.errors import ConfigurationError
from grid_engine.ladder import PriceLadder, compute_target_levels
from grid_engine.types import Side


def _prices(levels, side):
    return [lvl.price for lvl in levels if lvl.side is side]


def test_arithmetic_ladder_around_reference():
    settings = make_settings(levels_per_side=3, spacing_step=Decimal("1"))
    levels = compute_target_levels(settings, Decimal("100"))

    assert _prices(levels, Side.BUY) == [Decimal("99"), Decimal("98"), Decimal("97")]
    assert _prices(levels, Side.SELL) == [Decimal("101"), Decimal("102"), Decimal("103")]
    assert [lvl.level_index for lvl in levels if lvl.side is Side.BUY] == [0, 1, 2]
    assert all(lvl.target_size == Decimal("1") for lvl in levels)
    assert all(lvl.generation == 0 for lvl in levels)


def test_geometric_ladder_rounds_buys_down_and_sells_up():
    settings = make_settings(
        levels_per_side=2,
        spacing_mode="geometric",
        spacing_step=Decimal("1"),
        tick_size=Decimal("0.1"),
    )
    levels = compute_target_levels(settings, Decimal("100"))

    # 100 / 1.01 = 99.0099..., 100 / 1.0201 = 98.0296...
    assert _prices(levels, Side.BUY) == [Decimal("99.0"), Decimal("98.0")]
    # 100 * 1.01 = 101, 100 * 1.0201 = 102.01 -> 102.1
    assert _prices(levels, Side.SELL) == [Decimal("101.0"), Decimal("102.1")]


def test_scaled_sizes_grow_with_distance_and_respect_lot():
    settings = make_settings(
        size_mode="scaled",
        level_size=Decimal("1"),
        size_scale_factor=Decimal("0.55"),
        lot_size=Decimal("0.1"),
    )
    levels = compute_target_levels(settings, Decimal("100"))
    sizes = [lvl.target_size for lvl in levels if lvl.side is Side.BUY]

    # 1, 1.55 -> 1.5, 2.1
    assert sizes == [Decimal("1.0"), Decimal("1.5"), Decimal("2.1")]


def test_ladder_non_positive_price_is_configuration_error():
    settings = make_settings(levels_per_side=5, spacing_step=Decimal("30"))
    with pytest.raises(ConfigurationError):
        compute_target_levels(settings, Decimal("100"))


def test_ladder_collapsed_by_tick_rounding_is_configuration_error():
    settings = make_settings(spacing_step=Decimal("0.01"), tick_size=Decimal("1"))
    with pytest.raises(ConfigurationError):
        compute_target_levels(settings, Decimal("100"))


def test_non_positive_reference_is_rejected():
    with pytest.raises(ConfigurationError):
        compute_target_levels(make_settings(), Decimal("0"))


def test_recenter_only_beyond_threshold_and_bumps_generation():
    settings = make_settings(center_mode="mid_tracking", center_price=None, recenter_threshold_pct=Decimal("5"))
    ladder = PriceLadder(settings)
    first = ladder.build(Decimal("100"))
    assert first.generation == 0

    assert ladder.maybe_recenter(Decimal("104")) is False
    assert ladder.current is first

    assert ladder.maybe_recenter(Decimal("106")) is True
    assert ladder.current.generation == 1
    assert ladder.current.reference_price == Decimal("106")
    assert all(lvl.generation == 1 for lvl in ladder.current.levels)


def test_fixed_center_never_recenters():
    ladder = PriceLadder(make_settings())
    ladder.build(Decimal("100"))

    assert ladder.needs_recenter(Decimal("500")) is False
    assert ladder.maybe_recenter(Decimal("500")) is False
    assert ladder.current.generation == 0


def test_restore_keeps_persisted_generation():
    ladder = PriceLadder(make_settings())
    restored = ladder.restore(Decimal("100"), 7)

    assert restored.generation == 7
    assert {lvl.key for lvl in restored.levels} == {
        (7, side, i) for side in (Side.BUY, Side.SELL) for i in range(3)
    }


def test_rebuild_with_invalid_settings_keeps_previous_ladder():
    ladder = PriceLadder(make_settings())
    original = ladder.build(Decimal("100"))

    with pytest.raises(ConfigurationError):
        ladder.rebuild(make_settings(levels_per_side=5, spacing_step=Decimal("30")))

    assert ladder.current is original
    assert ladder.settings.spacing_step == Decimal("1")
