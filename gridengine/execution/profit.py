"""
Profit accounting derived from a strategy's order history.

Nothing here is stored: ProfitSnapshot is recomputed from the full list of
orders on every fill and every read, so it can never drift from the records.

Realized PnL pairs close fills against open fills first-in-first-out.
Commissions go to total_fee and are subtracted from total_profit_loss.
Funding income is reported on its own line and left out of both.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from gridengine.core.models import LevelIntent, Order, OrderStatus, PositionSide, ProfitSnapshot

_EPS = 1e-12


@dataclass
class _Lot:
    qty: float
    price: float


def filled_quantity(order: Order) -> float:
    if order.executed_qty > 0:
        return order.executed_qty
    return order.quantity if order.status == OrderStatus.FILLED else 0.0


def compute_profit(
    position_side: PositionSide,
    orders: Iterable[Order],
    funding_fee: float = 0.0,
    mark_price: Optional[float] = None,
) -> ProfitSnapshot:
    """
    FIFO-pair the strategy's fills into a ProfitSnapshot.

    Args:
        position_side: LONG pairs BUY opens with SELL closes, SHORT the reverse
        orders: Full order history for one strategy, any order
        funding_fee: Accumulated funding income (negative when paid)
        mark_price: Values the unmatched lots; omitted means no unrealized figure
    """
    fills = [o for o in orders if filled_quantity(o) > 0]
    fills.sort(key=lambda o: (o.updated_at, o.created_at))

    sign = 1.0 if position_side == PositionSide.LONG else -1.0
    lots: List[_Lot] = []
    realized = 0.0
    total_fee = 0.0
    pairings = 0

    for order in fills:
        qty = filled_quantity(order)
        px = order.fill_price
        total_fee += order.fee
        if order.intent == LevelIntent.OPEN:
            lots.append(_Lot(qty, px))
            continue

        remaining = qty
        matched = False
        while remaining > _EPS and lots:
            lot = lots[0]
            take = min(lot.qty, remaining)
            realized += sign * (px - lot.price) * take
            lot.qty -= take
            remaining -= take
            matched = True
            if lot.qty <= _EPS:
                lots.pop(0)
        if matched:
            pairings += 1

    open_qty = sum(l.qty for l in lots)
    open_value = sum(l.qty * l.price for l in lots)
    unrealized = 0.0
    if mark_price is not None and mark_price > 0:
        unrealized = sum(sign * (mark_price - l.price) * l.qty for l in lots)

    return ProfitSnapshot(
        total_profit_loss=realized - total_fee,
        total_fee=total_fee,
        funding_fee=funding_fee,
        total_trades=len(fills),
        total_pairing_times=pairings,
        total_open_position_value=open_value,
        open_position_quantity=open_qty,
        unrealized_profit_loss=unrealized,
    )
