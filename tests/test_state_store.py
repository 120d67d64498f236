from __future__ import annotations

import json
from decimal import Decimal

import pytest

from grid_engine.errors import ConfigurationError
from grid_engine.state_store import GridState, StateStore
from grid_engine.types import Side

FINGERPRINT = {"market_name": "TEST-USD", "levels_per_side": 3}


def _state(**overrides) -> GridState:
    base = dict(
        market_name="TEST-USD",
        fingerprint=dict(FINGERPRINT),
        reference_price=Decimal("100.5"),
        generation=3,
        bindings={"grid-a": (3, Side.BUY, 0), "grid-b": (3, Side.SELL, 2)},
        realized_pnl=Decimal("-1.25"),
        fees=Decimal("0.01"),
        halted=True,
        halt_reason="operator",
    )
    base.update(overrides)
    return GridState(**base)


def test_save_then_load_restores_state(tmp_path):
    store = StateStore(tmp_path / "grid_state.json")
    store.save(_state())

    loaded = store.load("TEST-USD", FINGERPRINT)

    assert loaded is not None
    assert loaded.reference_price == Decimal("100.5")
    assert loaded.generation == 3
    assert loaded.bindings == {"grid-a": (3, Side.BUY, 0), "grid-b": (3, Side.SELL, 2)}
    assert loaded.realized_pnl == Decimal("-1.25")
    assert loaded.halted is True
    assert loaded.halt_reason == "operator"
    assert loaded.saved_at > 0


def test_decimals_are_written_as_strings(tmp_path):
    path = tmp_path / "grid_state.json"
    StateStore(path).save(_state())

    raw = json.loads(path.read_text())
    assert raw["reference_price"] == "100.5"
    assert raw["realized_pnl"] == "-1.25"
    assert raw["bindings"]["grid-a"] == {"generation": 3, "side": "BUY", "level_index": 0}


def test_missing_file_loads_nothing(tmp_path):
    assert StateStore(tmp_path / "absent.json").load("TEST-USD", FINGERPRINT) is None


def test_corrupt_file_is_ignored(tmp_path):
    path = tmp_path / "grid_state.json"
    path.write_text("{not json")
    assert StateStore(path).load("TEST-USD", FINGERPRINT) is None


def test_other_market_is_configuration_error(tmp_path):
    store = StateStore(tmp_path / "grid_state.json")
    store.save(_state())
    with pytest.raises(ConfigurationError):
        store.load("BTC-USD", FINGERPRINT)


def test_changed_fingerprint_drops_ladder_but_keeps_pnl(tmp_path):
    store = StateStore(tmp_path / "grid_state.json")
    store.save(_state())
    new_fingerprint = dict(FINGERPRINT, levels_per_side=5)

    loaded = store.load("TEST-USD", new_fingerprint)

    assert loaded.reference_price is None
    assert loaded.generation == 0
    assert loaded.bindings == {}
    assert loaded.fingerprint == new_fingerprint
    assert loaded.realized_pnl == Decimal("-1.25")
    assert loaded.halted is True


def test_save_replaces_atomically_and_clear_removes(tmp_path):
    path = tmp_path / "nested" / "grid_state.json"
    store = StateStore(path)
    store.save(_state(generation=1))
    store.save(_state(generation=2))

    assert store.load("TEST-USD", FINGERPRINT).generation == 2
    assert [p.name for p in path.parent.iterdir()] == ["grid_state.json"]

    store.clear()
    store.clear()
    assert not path.exists()
