"""
Grid Engine Configuration

Loads GRID_ prefixed environment variables using pydantic-settings.
Defaults to testnet; requires explicit GRID_ENVIRONMENT=mainnet for production.

Every field is validated before the engine starts.  ``load_settings()``
converts pydantic's ``ValidationError`` into ``ConfigurationError`` so
callers only ever deal with the engine's own error taxonomy.
"""
from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config_env import ENV_FILE, CenterMode, GridEnvironment, SizeMode, SpacingMode
from .errors import ConfigurationError


class GridSettings(BaseSettings):
    """Configuration for the grid order management core."""

    model_config = SettingsConfigDict(
        env_prefix="GRID_",
        env_file=ENV_FILE,
        extra="ignore",
    )

    # --- Credentials ---
    vault_id: str = Field(default="", description="Vault ID for the trading account")
    stark_private_key: str = Field(default="", description="Stark private key")
    stark_public_key: str = Field(default="", description="Stark public key")
    api_key: str = Field(default="", description="API key")

    # --- Environment ---
    environment: GridEnvironment = Field(
        default=GridEnvironment.TESTNET,
        description="Network environment (testnet or mainnet)",
    )
    market_name: str = Field(
        default="ETH-USD",
        min_length=1,
        description="Market to run the grid on (e.g. ETH-USD)",
    )

    # --- Ladder shape ---
    center_mode: CenterMode = Field(
        default=CenterMode.MID_TRACKING,
        description="'fixed' anchors on center_price, 'mid_tracking' follows the live mid.",
    )
    center_price: Optional[Decimal] = Field(
        default=None,
        gt=0,
        description="Reference price when center_mode=fixed",
    )
    levels_per_side: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Number of grid levels on each side of the reference",
    )
    spacing_mode: SpacingMode = Field(
        default=SpacingMode.ARITHMETIC,
        description="Level spacing: absolute price step or percentage step",
    )
    spacing_step: Decimal = Field(
        default=Decimal("1"),
        gt=0,
        description=(
            "Distance between adjacent levels. Absolute price in ARITHMETIC mode, "
            "percent of the previous level in GEOMETRIC mode."
        ),
    )
    size_mode: SizeMode = Field(
        default=SizeMode.FIXED,
        description="'fixed' uses level_size everywhere, 'scaled' grows with distance",
    )
    level_size: Decimal = Field(
        default=Decimal("0.1"),
        gt=0,
        description="Order size of the level closest to the reference",
    )
    size_scale_factor: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description=(
            "In SCALED mode: size of level k = level_size * (1 + factor * k)."
        ),
    )
    tick_size: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Price increment. 0 disables price rounding.",
    )
    lot_size: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Size increment. 0 disables size rounding.",
    )
    recenter_threshold_pct: Decimal = Field(
        default=Decimal("5"),
        ge=0,
        description=(
            "Recompute the ladder only when the reference moves more than this "
            "percentage from the last reference."
        ),
    )

    # --- Reconciliation tolerances ---
    price_tolerance_bps: Decimal = Field(
        default=Decimal("1"),
        ge=0,
        description="Price drift (bps of target) tolerated before repricing an order",
    )
    size_tolerance_pct: Decimal = Field(
        default=Decimal("1"),
        ge=0,
        description="Size drift (percent of target) tolerated before resizing an order",
    )
    amend_enabled: bool = Field(
        default=True,
        description=(
            "Amend same-level orders in place when the gateway supports it. "
            "When false every reprice is a cancel/replace."
        ),
    )

    # --- Risk ---
    max_net_position: Decimal = Field(
        default=Decimal("10"),
        gt=0,
        description="Maximum absolute worst-case net position (contracts)",
    )
    max_open_orders: int = Field(
        default=100,
        ge=1,
        description="Maximum number of non-terminal orders at once",
    )
    max_realized_loss: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Kill switch: halt when realized PnL <= -value. 0 disables.",
    )
    max_drawdown: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description=(
            "Kill switch: halt when realized PnL falls this far below its high "
            "watermark. 0 disables."
        ),
    )

    # --- Dispatch ---
    max_inflight_dispatch: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum concurrent gateway calls",
    )
    dispatch_timeout_s: float = Field(
        default=5.0,
        gt=0,
        description="Per-call gateway timeout",
    )
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per action on transport failure",
    )
    retry_base_delay_s: float = Field(
        default=0.1,
        ge=0,
        description="First retry delay; doubles on each further attempt",
    )
    retry_max_delay_s: float = Field(
        default=5.0,
        ge=0,
        description="Cap on a single retry delay",
    )

    # --- Loop cadence ---
    reconcile_interval_s: float = Field(
        default=1.0,
        gt=0,
        description="Fixed reconciliation cadence",
    )
    reconcile_debounce_s: float = Field(
        default=0.05,
        ge=0,
        description="Coalescing window for eager reconciliation triggers",
    )
    market_data_staleness_s: float = Field(
        default=15.0,
        gt=0,
        description="Market data older than this is treated as stale",
    )
    pending_order_grace_s: float = Field(
        default=30.0,
        ge=0,
        description=(
            "An order missing from an exchange snapshot is only expired locally "
            "once it is older than this."
        ),
    )

    # --- Identity & persistence ---
    client_order_prefix: str = Field(
        default="grid",
        min_length=1,
        max_length=12,
        description="Prefix of locally generated client order ids",
    )
    state_file: Optional[Path] = Field(
        default=None,
        description="JSON file used to resume the grid after restart. Unset disables.",
    )
    state_save_interval_s: float = Field(
        default=30.0,
        ge=0,
        description="Minimum seconds between periodic state saves",
    )

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")

    # --- Helpers ---

    @property
    def is_configured(self) -> bool:
        return bool(
            self.vault_id
            and self.stark_private_key
            and self.stark_public_key
            and self.api_key
        )

    @property
    def endpoint_config(self) -> Any:
        from x10.perpetual.configuration import MAINNET_CONFIG, TESTNET_CONFIG

        if self.environment == GridEnvironment.MAINNET:
            return MAINNET_CONFIG
        return TESTNET_CONFIG

    def fingerprint(self) -> dict:
        """Parameters that define level identity, persisted for resume checks."""
        return {
            "market_name": self.market_name,
            "levels_per_side": self.levels_per_side,
            "spacing_mode": self.spacing_mode.value,
            "spacing_step": str(self.spacing_step),
            "center_mode": self.center_mode.value,
        }

    @field_validator("environment", "center_mode", "spacing_mode", "size_mode", mode="before")
    @classmethod
    def _normalise_enum(cls, v):
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def _check_cross_field(self) -> "GridSettings":
        if self.center_mode == CenterMode.FIXED and self.center_price is None:
            raise ValueError("center_price is required when center_mode=fixed")
        if self.spacing_mode == SpacingMode.GEOMETRIC and self.spacing_step >= 100:
            raise ValueError("geometric spacing_step must be below 100 percent")
        if self.lot_size > 0 and self.level_size < self.lot_size:
            raise ValueError("level_size is smaller than lot_size")
        if self.retry_max_delay_s < self.retry_base_delay_s:
            raise ValueError("retry_max_delay_s must be >= retry_base_delay_s")
        return self


def load_settings(**overrides: Any) -> GridSettings:
    """Build settings from the environment plus *overrides*.

    Raises ``ConfigurationError`` on any validation failure.
    """
    try:
        return GridSettings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid grid configuration: {exc}") from exc
