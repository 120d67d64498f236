"""
Grid state persistence

Stores just enough to resume a grid after a restart: the ladder reference
and generation (so resting orders re-bind to the same levels), the client
order id -> level bindings, realized PnL and the latched halt.  Written as
JSON via temp file + ``os.replace`` so a crash never leaves a torn file.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ConfigurationError
from .types import LevelKey, Side
from .utils import optional_decimal, safe_decimal

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1


class _DecimalEncoder(json.JSONEncoder):
    """Encode Decimal as string to preserve precision in JSON."""

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        return super().default(o)


@dataclass
class GridState:
    market_name: str
    fingerprint: Dict[str, Any]
    reference_price: Optional[Decimal] = None
    generation: int = 0
    bindings: Dict[str, LevelKey] = field(default_factory=dict)
    realized_pnl: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    halted: bool = False
    halt_reason: Optional[str] = None
    saved_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": _SCHEMA_VERSION,
            "market_name": self.market_name,
            "fingerprint": self.fingerprint,
            "reference_price": self.reference_price,
            "generation": self.generation,
            "bindings": {
                cid: {"generation": key[0], "side": key[1].value, "level_index": key[2]}
                for cid, key in self.bindings.items()
            },
            "realized_pnl": self.realized_pnl,
            "fees": self.fees,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "saved_at": self.saved_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "GridState":
        bindings: Dict[str, LevelKey] = {}
        for cid, b in (raw.get("bindings") or {}).items():
            bindings[cid] = (int(b["generation"]), Side.parse(b["side"]), int(b["level_index"]))
        return cls(
            market_name=str(raw["market_name"]),
            fingerprint=dict(raw.get("fingerprint") or {}),
            reference_price=optional_decimal(raw.get("reference_price")),
            generation=int(raw.get("generation", 0)),
            bindings=bindings,
            realized_pnl=safe_decimal(raw.get("realized_pnl", "0")),
            fees=safe_decimal(raw.get("fees", "0")),
            halted=bool(raw.get("halted", False)),
            halt_reason=raw.get("halt_reason"),
            saved_at=float(raw.get("saved_at", 0.0)),
        )


class StateStore:
    """Atomic JSON file holding one grid's resumable state."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self, market_name: str, fingerprint: Dict[str, Any]) -> Optional[GridState]:
        """Return the saved state, or None if there is nothing usable.

        A file for a different market raises ``ConfigurationError``.  A
        fingerprint mismatch keeps PnL and halt state but drops the ladder
        and bindings, since level identity no longer means the same thing.
        """
        if not self._path.exists():
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            state = GridState.from_dict(raw)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.error("Ignoring unreadable state file %s: %s", self._path, exc)
            return None

        if state.market_name != market_name:
            raise ConfigurationError(
                f"state file {self._path} belongs to market {state.market_name}, "
                f"not {market_name}"
            )
        if state.fingerprint != fingerprint:
            logger.warning(
                "Grid parameters changed since last run (%s -> %s); "
                "discarding saved ladder and level bindings",
                state.fingerprint, fingerprint,
            )
            state.reference_price = None
            state.generation = 0
            state.bindings = {}
            state.fingerprint = dict(fingerprint)
        logger.info(
            "Loaded grid state: reference=%s generation=%d bindings=%d realized_pnl=%s halted=%s",
            state.reference_price, state.generation, len(state.bindings),
            state.realized_pnl, state.halted,
        )
        return state

    def save(self, state: GridState) -> None:
        state.saved_at = time.time()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, cls=_DecimalEncoder, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        logger.debug("Grid state saved to %s", self._path)

    def clear(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
