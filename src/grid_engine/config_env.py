"""Environment resolution and enums for grid engine configuration.

Settings are read from ``GRID_*`` variables and an optional env file.  The
``ENV`` variable names that file: ``ENV=testnet`` looks for ``.testnet``
and then ``testnet`` at the repository root, falling back to ``.env``.
"""
from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import List, Optional

_ROOT_MARKERS = ("pyproject.toml", ".git")


def repository_root(start: Optional[Path] = None) -> Path:
    """Nearest ancestor of *start* holding a root marker."""
    here = (start or Path(__file__)).resolve()
    for directory in (here, *here.parents):
        if any((directory / marker).exists() for marker in _ROOT_MARKERS):
            return directory
    # src/grid_engine/config_env.py -> repository root
    return here.parents[2]


def env_file_candidates(name: Optional[str]) -> List[str]:
    if not name:
        return [".env"]
    if name.startswith("."):
        return [name]
    return [f".{name}", name]


def resolve_env_file(name: Optional[str] = None, root: Optional[Path] = None) -> Path:
    """Path of the env file selected by *name* (default: ``$ENV``).

    Returns ``<root>/.env`` when no candidate exists; pydantic-settings
    skips a missing env file.
    """
    root = root or repository_root()
    if name is None:
        name = os.getenv("ENV", ".env")
    for candidate in env_file_candidates(name):
        path = Path(candidate)
        if not path.is_absolute():
            path = root / path
        if path.exists():
            return path
    return root / ".env"


ENV_FILE = resolve_env_file()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class GridEnvironment(str, Enum):
    TESTNET = "testnet"
    MAINNET = "mainnet"


class CenterMode(str, Enum):
    """Where the ladder is anchored.

    FIXED        - ``center_price`` from config; the ladder never recenters.
    MID_TRACKING - the live mid from the order book cache.
    """

    FIXED = "fixed"
    MID_TRACKING = "mid_tracking"


class SpacingMode(str, Enum):
    """ARITHMETIC steps by an absolute price, GEOMETRIC by a percentage."""

    ARITHMETIC = "arithmetic"
    GEOMETRIC = "geometric"


class SizeMode(str, Enum):
    FIXED = "fixed"
    SCALED = "scaled"
