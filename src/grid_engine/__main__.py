"""Allow ``python -m grid_engine`` invocation."""
from __future__ import annotations

import sys

from .grid_runner import run

if __name__ == "__main__":
    sys.exit(run())
