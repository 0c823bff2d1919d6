"""
Order Reconciler - minimal place/cancel diff between the plan and the book.

diff_levels() is the stateless core: it matches exchange open orders to
target levels by (side, price within one tick) and decides what to place and
what to cancel. OrderReconciler wraps it with a per-strategy pending ledger so
an action already in flight is not emitted again while the exchange snapshot
still lags behind it.

Policies:
- An order with a fill in progress is never cancelled.
- A matching order is left alone rather than cancelled and replaced.
- At most one order per level: among duplicates the earliest is kept,
  unless a later one is already filling, in which case that one is kept.
- Orders matching no target level are cancelled.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from gridengine.core.models import ExchangeOrder, GridLevel, OrderSide
from gridengine.core.utils import price_key

_MIN_TOL = 1e-9


@dataclass(frozen=True)
class PlaceAction:
    level: GridLevel

    @property
    def key(self) -> Tuple[OrderSide, str]:
        return (self.level.side, price_key(self.level.price))


@dataclass(frozen=True)
class CancelAction:
    order: ExchangeOrder
    reason: str  # "stale" | "duplicate"


Action = Union[PlaceAction, CancelAction]


@dataclass
class ReconcileResult:
    actions: List[Action] = field(default_factory=list)
    matched: int = 0
    duplicates: int = 0
    protected: int = 0  # orders left alone only because they are filling

    @property
    def places(self) -> List[PlaceAction]:
        return [a for a in self.actions if isinstance(a, PlaceAction)]

    @property
    def cancels(self) -> List[CancelAction]:
        return [a for a in self.actions if isinstance(a, CancelAction)]

    def __len__(self) -> int:
        return len(self.actions)


def _age_key(order: ExchangeOrder) -> Tuple[int, int]:
    return (order.update_time, order.order_id)


def _pick_keeper(group: Sequence[ExchangeOrder]) -> ExchangeOrder:
    filling = [o for o in group if o.fill_in_progress]
    return min(filling or group, key=_age_key)


def _nearest_level(
    order: ExchangeOrder,
    levels: Sequence[GridLevel],
    tolerance: float,
) -> Optional[GridLevel]:
    best: Optional[GridLevel] = None
    best_dist = tolerance
    for lv in levels:
        if lv.side != order.side:
            continue
        dist = abs(lv.price - order.price)
        if dist < best_dist:
            best, best_dist = lv, dist
    return best


def diff_levels(
    target: Iterable[GridLevel],
    open_orders: Sequence[ExchangeOrder],
    tolerance: float,
) -> ReconcileResult:
    """
    Stateless diff.

    Args:
        target: Levels the planner wants resting
        open_orders: Exchange snapshot for this strategy's symbol and side
        tolerance: Match band, normally the symbol tick size

    Returns:
        ReconcileResult with cancels first (by order id) then places (by price).
    """
    tol = max(tolerance, _MIN_TOL)
    levels = sorted(target, key=lambda lv: (lv.side.value, lv.price))
    groups: Dict[GridLevel, List[ExchangeOrder]] = {}
    result = ReconcileResult()
    cancels: List[CancelAction] = []

    for order in open_orders:
        lv = _nearest_level(order, levels, tol)
        if lv is None:
            if order.fill_in_progress:
                result.protected += 1
            else:
                cancels.append(CancelAction(order, "stale"))
            continue
        groups.setdefault(lv, []).append(order)

    for lv, group in groups.items():
        result.matched += 1
        if len(group) == 1:
            continue
        keeper = _pick_keeper(group)
        for order in group:
            if order is keeper:
                continue
            result.duplicates += 1
            if order.fill_in_progress:
                result.protected += 1
            else:
                cancels.append(CancelAction(order, "duplicate"))

    places = [PlaceAction(lv) for lv in levels if lv not in groups]
    places.sort(key=lambda a: a.level.price)
    cancels.sort(key=lambda a: a.order.order_id)
    result.actions = [*cancels, *places]
    return result


def _group_by_price(open_orders: Sequence[ExchangeOrder], tolerance: float) -> List[List[ExchangeOrder]]:
    tol = max(tolerance, _MIN_TOL)
    groups: List[List[ExchangeOrder]] = []
    for side in OrderSide:
        side_orders = sorted((o for o in open_orders if o.side == side), key=lambda o: o.price)
        for order in side_orders:
            if groups and groups[-1][0].side == side and abs(order.price - groups[-1][0].price) < tol:
                groups[-1].append(order)
            else:
                groups.append([order])
    return groups


def count_duplicates(open_orders: Sequence[ExchangeOrder], tolerance: float) -> int:
    """Orders beyond the first on any price level, regardless of plan."""
    return sum(len(g) - 1 for g in _group_by_price(open_orders, tolerance))


def duplicate_cancels(open_orders: Sequence[ExchangeOrder], tolerance: float) -> List[CancelAction]:
    """Cancel actions that collapse every level to its keeper. Filling orders are skipped."""
    out: List[CancelAction] = []
    for group in _group_by_price(open_orders, tolerance):
        if len(group) < 2:
            continue
        keeper = _pick_keeper(group)
        out.extend(
            CancelAction(o, "duplicate") for o in group if o is not keeper and not o.fill_in_progress
        )
    return out


class OrderReconciler:
    """
    Stateful reconciler with an in-flight ledger per strategy.

    Calling reconcile() twice with the same target and snapshot yields no
    actions the second time: the first call's actions are pending until the
    snapshot reflects them, they expire, or release() is called for a
    definite rejection.

    Usage:
        rec = OrderReconciler(pending_ttl_sec=30)
        result = rec.reconcile(strategy_id, levels, open_orders, tolerance=tick)
        ...
        rec.release(strategy_id, failed_action)
    """

    def __init__(
        self,
        pending_ttl_sec: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pending_ttl_sec = pending_ttl_sec
        self._clock = clock
        self._pending_places: Dict[object, Dict[Tuple[OrderSide, str], float]] = {}
        self._pending_cancels: Dict[object, Dict[int, float]] = {}

    def _expire(self, key: object) -> None:
        now = self._clock()
        for ledger in (self._pending_places.get(key), self._pending_cancels.get(key)):
            if not ledger:
                continue
            for k in [k for k, exp in ledger.items() if exp <= now]:
                del ledger[k]

    def _settle(self, key: object, open_orders: Sequence[ExchangeOrder], tolerance: float) -> None:
        places = self._pending_places.get(key)
        if places:
            tol = max(tolerance, _MIN_TOL)
            for pk in list(places):
                side, px = pk[0], float(pk[1])
                if any(o.side == side and abs(o.price - px) < tol for o in open_orders):
                    del places[pk]
        cancels = self._pending_cancels.get(key)
        if cancels:
            live = {o.order_id for o in open_orders}
            for oid in [oid for oid in cancels if oid not in live]:
                del cancels[oid]

    def reconcile(
        self,
        key: object,
        target: Iterable[GridLevel],
        open_orders: Sequence[ExchangeOrder],
        tolerance: float,
    ) -> ReconcileResult:
        self._expire(key)
        self._settle(key, open_orders, tolerance)
        result = diff_levels(target, open_orders, tolerance)
        result.actions = self._filter_and_track(key, result.actions)
        return result

    def reconcile_duplicates(
        self,
        key: object,
        open_orders: Sequence[ExchangeOrder],
        tolerance: float,
    ) -> ReconcileResult:
        """Duplicate-only pass used while a resume waits for a clean book."""
        self._expire(key)
        self._settle(key, open_orders, tolerance)
        dupes = count_duplicates(open_orders, tolerance)
        actions = self._filter_and_track(key, list(duplicate_cancels(open_orders, tolerance)))
        return ReconcileResult(actions=actions, duplicates=dupes)

    def _filter_and_track(self, key: object, actions: List[Action]) -> List[Action]:
        places = self._pending_places.setdefault(key, {})
        cancels = self._pending_cancels.setdefault(key, {})
        expiry = self._clock() + self.pending_ttl_sec
        out: List[Action] = []
        for action in actions:
            if isinstance(action, PlaceAction):
                if action.key in places:
                    continue
                places[action.key] = expiry
            else:
                if action.order.order_id in cancels:
                    continue
                cancels[action.order.order_id] = expiry
            out.append(action)
        return out

    def release(self, key: object, action: Action) -> None:
        """Drop a pending entry after the exchange definitely refused the action."""
        if isinstance(action, PlaceAction):
            self._pending_places.get(key, {}).pop(action.key, None)
        else:
            self._pending_cancels.get(key, {}).pop(action.order.order_id, None)

    def pending_count(self, key: object) -> int:
        return len(self._pending_places.get(key, {})) + len(self._pending_cancels.get(key, {}))

    def forget(self, key: object) -> None:
        self._pending_places.pop(key, None)
        self._pending_cancels.pop(key, None)
