"""Shared utility helpers for the grid_engine package."""
from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_UP, Decimal, InvalidOperation
from typing import Optional


def safe_decimal(value, default: str = "0") -> Decimal:
    """Convert *value* to Decimal, returning *default* on failure."""
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError, ArithmeticError):
        return Decimal(default)


def optional_decimal(value) -> Optional[Decimal]:
    """Like ``safe_decimal`` but maps missing or unparsable values to None."""
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError, ArithmeticError):
        return None


def round_down_to_step(value: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return value
    return (value / step).to_integral_value(rounding=ROUND_DOWN) * step


def round_up_to_step(value: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return value
    return (value / step).to_integral_value(rounding=ROUND_UP) * step
