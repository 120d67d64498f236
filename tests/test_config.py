from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import make_settings
from grid_engine.config import GridSettings, load_settings
from grid_engine.config_env import CenterMode, GridEnvironment, SpacingMode, resolve_env_file
from grid_engine.errors import ConfigurationError


def test_defaults_are_testnet_mid_tracking():
    settings = GridSettings(_env_file=None)
    assert settings.environment == GridEnvironment.TESTNET
    assert settings.center_mode == CenterMode.MID_TRACKING
    assert settings.is_configured is False


def test_env_vars_are_read_with_prefix(monkeypatch):
    monkeypatch.setenv("GRID_MARKET_NAME", "BTC-USD")
    monkeypatch.setenv("GRID_SPACING_MODE", "GEOMETRIC")
    monkeypatch.setenv("GRID_SPACING_STEP", "0.5")
    monkeypatch.setenv("GRID_LEVELS_PER_SIDE", "7")

    settings = GridSettings(_env_file=None)

    assert settings.market_name == "BTC-USD"
    assert settings.spacing_mode == SpacingMode.GEOMETRIC
    assert settings.spacing_step == Decimal("0.5")
    assert settings.levels_per_side == 7


@pytest.mark.parametrize(
    "overrides",
    [
        {"center_mode": "fixed", "center_price": None},
        {"spacing_step": Decimal("0")},
        {"levels_per_side": 0},
        {"spacing_mode": "geometric", "spacing_step": Decimal("100")},
        {"level_size": Decimal("0.001"), "lot_size": Decimal("0.01")},
        {"retry_base_delay_s": 2.0, "retry_max_delay_s": 1.0},
        {"log_level": "chatty"},
    ],
)
def test_invalid_settings_raise_configuration_error(overrides):
    with pytest.raises(ConfigurationError):
        load_settings(_env_file=None, **overrides)


def test_fingerprint_covers_level_identity_only():
    a = make_settings()
    b = make_settings(level_size=Decimal("2"), max_net_position=Decimal("5"))
    c = make_settings(spacing_step=Decimal("2"))

    assert a.fingerprint() == b.fingerprint()
    assert a.fingerprint() != c.fingerprint()


def test_log_level_is_normalised():
    assert make_settings(log_level="debug").log_level == "DEBUG"


def test_env_file_prefers_dotted_name_then_plain_then_default(tmp_path, monkeypatch):
    (tmp_path / "testnet").write_text("GRID_MARKET_NAME=ETH-USD\n")
    assert resolve_env_file("testnet", root=tmp_path) == tmp_path / "testnet"

    (tmp_path / ".testnet").write_text("GRID_MARKET_NAME=ETH-USD\n")
    assert resolve_env_file("testnet", root=tmp_path) == tmp_path / ".testnet"

    assert resolve_env_file("mainnet", root=tmp_path) == tmp_path / ".env"

    monkeypatch.setenv("ENV", "testnet")
    assert resolve_env_file(root=tmp_path) == tmp_path / ".testnet"
