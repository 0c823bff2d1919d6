"""
Utility helpers.
"""

from __future__ import annotations

import math
import time
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal


def now_ms() -> int:
    return int(time.time() * 1000)


def tick_to_decimals(tick: float) -> int:
    if tick <= 0:
        return 2
    s = f"{tick:.10f}".rstrip("0")
    if "." in s:
        return max(0, len(s.split(".")[1]))
    return 0


def round_to_tick(px: float, tick: float) -> float:
    """Round a price to the nearest tick multiple."""
    if tick <= 0:
        return px
    d_tick = Decimal(str(tick))
    steps = (Decimal(str(px)) / d_tick).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return float(steps * d_tick)


def floor_to_step(qty: float, step: float) -> float:
    """Truncate a quantity to the lot step. Never rounds up."""
    if step <= 0:
        return qty
    d_step = Decimal(str(step))
    steps = (Decimal(str(qty)) / d_step).quantize(Decimal("1"), rounding=ROUND_DOWN)
    return float(steps * d_step)


def price_key(px: float, decimals: int = 8) -> str:
    """Stable string key for a price so float noise never splits one level in two."""
    return f"{round(px, decimals):.{decimals}f}"


def is_close(a: float, b: float, tol: float) -> bool:
    return math.isclose(a, b, rel_tol=0.0, abs_tol=tol)


def to_float(value, default: float = 0.0) -> float:
    """Parse exchange numeric strings, tolerating None and empty values."""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
