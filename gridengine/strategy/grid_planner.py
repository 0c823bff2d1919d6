"""
Grid planner - pure computation of the target ladder for one strategy.

Given a strategy's static configuration and the current price, computes the
set of GridLevels that should have a resting order. No I/O and no state:
the same inputs always produce the same frozenset, which is what lets the
reconciler diff plans cycle after cycle without flapping.

Side rules:
    LONG   below price -> OPEN  / BUY     above price -> CLOSE / SELL
    SHORT  above price -> OPEN  / SELL    below price -> CLOSE / BUY
A level sitting on the current price gets no order. Outside
[price_min, price_max] only close levels survive.

Position rules:
    closes      at most floor(position / close_qty), nearest first
    floor       below min_position_quantity one marketable top-up order is
                added at the nearest level on the far side of price
    trend hold  with priority_close_on_trend, opens pause while the position
                can absorb a close and price sits on the profitable side of
                the entry price
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Protocol

from gridengine.core.models import (
    GridLevel,
    LevelIntent,
    PositionSide,
    entry_side,
    exit_side,
)
from gridengine.core.utils import floor_to_step, round_to_tick

_EPS = 1e-9


class GridConfig(Protocol):
    position_side: PositionSide
    price_min: float
    price_max: float
    min_position_quantity: Optional[float]
    priority_close_on_trend: bool

    @property
    def spacing(self) -> float: ...

    @property
    def open_qty(self) -> float: ...

    @property
    def close_qty(self) -> float: ...


@dataclass(frozen=True)
class PlanContext:
    """Per-cycle inputs that are not part of the static config."""
    tick_size: float = 0.0
    step_size: float = 0.0
    open_allowed: bool = True
    # Caps resting close levels to what the position can actually absorb.
    position_qty: Optional[float] = None
    entry_price: float = 0.0


def level_prices(config: GridConfig, tick_size: float = 0.0) -> List[float]:
    """
    Every ladder price from price_min upward in uniform steps, never above price_max.

    Raises:
        ValueError: spacing <= 0. Creation-time validation should make this unreachable.
    """
    step = config.spacing
    if step <= 0:
        raise ValueError(f"grid spacing must be > 0, got {step}")
    span = config.price_max - config.price_min
    n = int(math.floor(span / step + _EPS))
    prices: List[float] = []
    for i in range(n + 1):
        px = config.price_min + i * step
        px = round_to_tick(px, tick_size) if tick_size > 0 else round(px, 10)
        if px > config.price_max + _EPS:
            break
        if prices and px <= prices[-1]:
            continue
        prices.append(px)
    return prices


def plan(
    config: GridConfig,
    current_price: float,
    ctx: Optional[PlanContext] = None,
) -> FrozenSet[GridLevel]:
    """
    Compute the target level set for current_price.

    Args:
        config: Strategy config (bounds, spacing, side, order sizes)
        current_price: Latest mark price
        ctx: Symbol precision, position and capacity gates for this cycle

    Returns:
        Frozen set of GridLevels; empty when nothing should rest.
    """
    ctx = ctx or PlanContext()
    prices = level_prices(config, ctx.tick_size)
    open_qty = _size(config.open_qty, ctx.step_size)
    close_qty = _size(config.close_qty, ctx.step_size)
    if open_qty <= 0 or close_qty <= 0:
        return frozenset()

    on_price_tol = ctx.tick_size / 2 if ctx.tick_size > 0 else config.spacing * _EPS
    in_band = config.price_min <= current_price <= config.price_max
    opens_ok = in_band and ctx.open_allowed
    allow_open = opens_ok and not _trend_hold(config, current_price, ctx, close_qty)

    open_side = entry_side(config.position_side)
    close_side = exit_side(config.position_side)
    is_long = config.position_side == PositionSide.LONG

    opens: List[GridLevel] = []
    closes: List[GridLevel] = []
    for px in prices:
        if abs(px - current_price) <= on_price_tol:
            continue
        below = px < current_price
        if below == is_long:
            if allow_open:
                opens.append(GridLevel(px, open_side, LevelIntent.OPEN, open_qty))
        else:
            closes.append(GridLevel(px, close_side, LevelIntent.CLOSE, close_qty))

    if ctx.position_qty is not None:
        capacity = int(math.floor(ctx.position_qty / close_qty + _EPS))
        closes.sort(key=lambda lv: abs(lv.price - current_price))
        closes = closes[:max(capacity, 0)]

    if opens_ok:
        top_up = _top_up(config, current_price, ctx, prices, on_price_tol, open_qty)
        if top_up is not None:
            opens.append(top_up)

    return frozenset(opens + closes)


def _size(qty: float, step_size: float) -> float:
    return floor_to_step(qty, step_size) if step_size > 0 else qty


def _trend_hold(config: GridConfig, price: float, ctx: PlanContext, close_qty: float) -> bool:
    """Opens wait while the position is in profit and large enough to close into the trend."""
    if not config.priority_close_on_trend or ctx.position_qty is None or ctx.entry_price <= 0:
        return False
    if ctx.position_qty + _EPS < close_qty:
        return False
    if config.position_side == PositionSide.LONG:
        return price >= ctx.entry_price
    return price <= ctx.entry_price


def _top_up(
    config: GridConfig,
    price: float,
    ctx: PlanContext,
    prices: List[float],
    on_price_tol: float,
    open_qty: float,
) -> Optional[GridLevel]:
    """
    Marketable entry order restoring min_position_quantity.

    Priced at the nearest ladder level past the current price so it crosses
    the book; sized to the shortfall plus one regular open.
    """
    floor_qty = config.min_position_quantity
    if not floor_qty or ctx.position_qty is None or ctx.position_qty + _EPS >= floor_qty:
        return None
    if config.position_side == PositionSide.LONG:
        beyond = [px for px in prices if px > price + on_price_tol]
        px = beyond[0] if beyond else None
    else:
        beyond = [px for px in prices if px < price - on_price_tol]
        px = beyond[-1] if beyond else None
    if px is None:
        return None
    qty = _size(floor_qty - ctx.position_qty + open_qty, ctx.step_size)
    if qty <= 0:
        return None
    return GridLevel(px, entry_side(config.position_side), LevelIntent.OPEN, qty)


def split_by_intent(levels: FrozenSet[GridLevel]) -> tuple[List[GridLevel], List[GridLevel]]:
    """(opens, closes), each sorted by price."""
    opens = sorted((lv for lv in levels if lv.intent == LevelIntent.OPEN), key=lambda lv: lv.price)
    closes = sorted((lv for lv in levels if lv.intent == LevelIntent.CLOSE), key=lambda lv: lv.price)
    return opens, closes
