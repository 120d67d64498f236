#!/usr/bin/env python
"""Entry point for the grid engine."""
from __future__ import annotations

import sys

from grid_engine.grid_runner import run

if __name__ == "__main__":
    sys.exit(run(sys.argv[1:]))
