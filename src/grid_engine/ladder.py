"""
Price Ladder Model

Derives the desired set of grid levels from configuration and a reference
price.  Pure computation, no I/O.

Buy levels are indexed 0..N-1 walking down from the reference, sell levels
0..N-1 walking up.  Each recenter bumps the ladder ``generation`` so orders
placed for an older ladder can be recognised as bound to a level that no
longer exists.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional

from .config import GridSettings
from .config_env import CenterMode, SizeMode, SpacingMode
from .errors import ConfigurationError
from .types import GridLevel, Ladder, Side
from .utils import round_down_to_step, round_up_to_step

logger = logging.getLogger(__name__)

_HUNDRED = Decimal("100")


def _raw_price(settings: GridSettings, reference: Decimal, side: Side, distance: int) -> Decimal:
    step = settings.spacing_step
    if settings.spacing_mode == SpacingMode.ARITHMETIC:
        offset = step * distance
        return reference - offset if side is Side.BUY else reference + offset
    factor = (Decimal("1") + step / _HUNDRED) ** distance
    return reference / factor if side is Side.BUY else reference * factor


def _level_size(settings: GridSettings, level_index: int) -> Decimal:
    size = settings.level_size
    if settings.size_mode == SizeMode.SCALED:
        size = size * (Decimal("1") + settings.size_scale_factor * level_index)
    return round_down_to_step(size, settings.lot_size)


def compute_target_levels(
    settings: GridSettings,
    reference_price: Decimal,
    generation: int = 0,
) -> List[GridLevel]:
    """Return buy levels then sell levels around *reference_price*.

    Raises ``ConfigurationError`` when spacing or sizing would produce a
    non-positive or non-monotonic ladder.
    """
    reference = Decimal(str(reference_price))
    if reference <= 0:
        raise ConfigurationError(f"reference price must be positive, got {reference}")

    levels: List[GridLevel] = []
    for side in (Side.BUY, Side.SELL):
        previous: Optional[Decimal] = None
        for index in range(settings.levels_per_side):
            raw = _raw_price(settings, reference, side, index + 1)
            if side is Side.BUY:
                price = round_down_to_step(raw, settings.tick_size)
            else:
                price = round_up_to_step(raw, settings.tick_size)

            if price <= 0:
                raise ConfigurationError(
                    f"{side.value} level {index} price {price} is not positive "
                    f"(reference={reference} step={settings.spacing_step})"
                )
            if previous is not None:
                moving_away = price < previous if side is Side.BUY else price > previous
                if not moving_away:
                    raise ConfigurationError(
                        f"{side.value} levels are not strictly monotonic at level {index}: "
                        f"{previous} -> {price} (step too small for tick_size?)"
                    )
            previous = price

            size = _level_size(settings, index)
            if size <= 0:
                raise ConfigurationError(
                    f"{side.value} level {index} size {size} is not positive"
                )
            levels.append(GridLevel(
                price=price,
                side=side,
                target_size=size,
                level_index=index,
                generation=generation,
            ))

    best_bid = levels[0].price
    best_ask = levels[settings.levels_per_side].price
    if best_bid >= best_ask:
        raise ConfigurationError(
            f"ladder is crossed: best bid level {best_bid} >= best ask level {best_ask}"
        )
    return levels


class PriceLadder:
    """Owns the current ladder and decides when to recenter it."""

    def __init__(self, settings: GridSettings) -> None:
        self._settings = settings
        self._current: Optional[Ladder] = None

    @property
    def current(self) -> Optional[Ladder]:
        return self._current

    @property
    def settings(self) -> GridSettings:
        return self._settings

    def build(self, reference_price: Decimal) -> Ladder:
        """Compute a fresh ladder, one generation past the current one."""
        generation = 0 if self._current is None else self._current.generation + 1
        return self._install(Decimal(str(reference_price)), generation)

    def restore(self, reference_price: Decimal, generation: int) -> Ladder:
        """Recreate a persisted ladder so resting orders stay bound to it."""
        ladder = self._install(Decimal(str(reference_price)), generation)
        logger.info(
            "Ladder restored: reference=%s generation=%d levels=%d",
            ladder.reference_price, ladder.generation, len(ladder.levels),
        )
        return ladder

    def rebuild(self, settings: GridSettings) -> Ladder:
        """Re-derive levels after a config change, keeping reference and generation."""
        if self._current is None:
            raise ConfigurationError("cannot rebuild a ladder that was never built")
        previous = self._settings
        self._settings = settings
        try:
            return self._install(self._current.reference_price, self._current.generation)
        except ConfigurationError:
            self._settings = previous
            raise

    def drift(self, reference_price: Decimal) -> Optional[Decimal]:
        """Relative move of *reference_price* from the ladder's reference, in percent."""
        if self._current is None:
            return None
        last = self._current.reference_price
        return abs(Decimal(str(reference_price)) - last) / last * _HUNDRED

    def needs_recenter(self, reference_price: Decimal) -> bool:
        if self._current is None:
            return True
        if self._settings.center_mode == CenterMode.FIXED:
            return False
        drift = self.drift(reference_price)
        return drift is not None and drift > self._settings.recenter_threshold_pct

    def maybe_recenter(self, reference_price: Decimal) -> bool:
        """Recompute the ladder when the reference moved beyond the threshold.

        Returns True when a new generation was installed.
        """
        if not self.needs_recenter(reference_price):
            return False
        old = self._current
        ladder = self.build(reference_price)
        if old is not None:
            logger.info(
                "Ladder recentered: reference %s -> %s (generation %d -> %d)",
                old.reference_price, ladder.reference_price,
                old.generation, ladder.generation,
            )
        return True

    def _install(self, reference: Decimal, generation: int) -> Ladder:
        levels = compute_target_levels(self._settings, reference, generation)
        self._current = Ladder(
            reference_price=reference,
            generation=generation,
            levels=tuple(levels),
        )
        logger.debug(
            "Ladder computed: reference=%s generation=%d bids=%s asks=%s",
            reference,
            generation,
            [str(lvl.price) for lvl in levels if lvl.side is Side.BUY],
            [str(lvl.price) for lvl in levels if lvl.side is Side.SELL],
        )
        return self._current
