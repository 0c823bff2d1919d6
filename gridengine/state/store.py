"""
Durable strategy and order records.

One JSON document per strategy (config, status and its orders) under
state_dir. Writes go to a tmp file and are renamed into place, run in the
default executor, and serialized by an asyncio.Lock. Reads are served from
an in-memory copy that every write updates first, which gives
read-your-writes within the process.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from gridengine.core.json_utils import dumps, dumps_pretty, loads
from gridengine.core.models import ExecutionStatus, GridStrategy, Order, OrderStatus

log = logging.getLogger("gridengine")


class StrategyNotFoundError(KeyError):
    """No live strategy with the requested id."""


class _JsonFile:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.tmp = path.with_suffix(".tmp")

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = loads(self.path.read_bytes())
        except (OSError, ValueError) as exc:
            log.error(dumps({"event": "state_load_error", "path": str(self.path), "err": str(exc)}))
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.tmp.write_bytes(dumps_pretty(data))
        self.tmp.replace(self.path)


class StrategyStore:
    """
    Usage:
        store = StrategyStore("state")
        await store.load_all()
        strategy = await store.save_strategy(strategy)   # assigns id on first save
        await store.upsert_order(order)
    """

    def __init__(self, state_dir: str) -> None:
        self.root = Path(state_dir)
        self._meta = _JsonFile(self.root / "meta.json")
        self._lock = asyncio.Lock()
        self._strategies: Dict[int, GridStrategy] = {}
        self._orders: Dict[int, Dict[str, Order]] = {}
        self._next_id = 1

    def _doc(self, strategy_id: int) -> _JsonFile:
        return _JsonFile(self.root / "strategies" / f"strategy_{strategy_id}.json")

    async def _run(self, fn, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def load_all(self) -> int:
        """Read every strategy document from disk. Returns how many were loaded."""
        async with self._lock:
            return await self._run(self._load_all_sync)

    def _load_all_sync(self) -> int:
        meta = self._meta.load()
        self._next_id = int(meta.get("next_id", 1))
        folder = self.root / "strategies"
        if not folder.exists():
            return 0
        count = 0
        for path in sorted(folder.glob("strategy_*.json")):
            doc = _JsonFile(path).load()
            raw = doc.get("strategy")
            if not raw:
                continue
            try:
                strategy = GridStrategy.from_dict(raw)
                orders = {o["id"]: Order.from_dict(o) for o in doc.get("orders", [])}
            except (KeyError, TypeError, ValueError) as exc:
                log.error(dumps({"event": "state_decode_error", "path": str(path), "err": str(exc)}))
                continue
            self._strategies[strategy.id] = strategy
            self._orders[strategy.id] = orders
            self._next_id = max(self._next_id, strategy.id + 1)
            count += 1
        return count

    def _write_sync(self, strategy_id: int) -> None:
        strategy = self._strategies[strategy_id]
        orders = self._orders.get(strategy_id, {})
        self._doc(strategy_id).save({
            "strategy": strategy.to_dict(),
            "orders": [o.to_dict() for o in orders.values()],
        })
        self._meta.save({"next_id": self._next_id})

    async def _persist(self, strategy_id: int) -> None:
        await self._run(self._write_sync, strategy_id)

    # ----- strategies -----

    async def save_strategy(self, strategy: GridStrategy) -> GridStrategy:
        async with self._lock:
            if strategy.id is None:
                strategy.id = self._next_id
                self._next_id += 1
            strategy.touch()
            self._strategies[strategy.id] = strategy
            self._orders.setdefault(strategy.id, {})
            await self._persist(strategy.id)
            return strategy

    async def update_status(self, strategy_id: int, status: ExecutionStatus) -> None:
        async with self._lock:
            strategy = self._require(strategy_id)
            strategy.execution_status = status
            strategy.touch()
            await self._persist(strategy_id)

    def _require(self, strategy_id: int) -> GridStrategy:
        strategy = self._strategies.get(strategy_id)
        if strategy is None or strategy.deleted:
            raise StrategyNotFoundError(strategy_id)
        return strategy

    def get_strategy(self, strategy_id: int) -> GridStrategy:
        return self._require(strategy_id)

    def list_strategies(self, api_key: Optional[str] = None, include_deleted: bool = False) -> List[GridStrategy]:
        out = [
            s for s in self._strategies.values()
            if (include_deleted or not s.deleted) and (api_key is None or s.api_key == api_key)
        ]
        return sorted(out, key=lambda s: s.id)

    def find_active(self, api_key: str, symbol: str, position_side: str) -> Optional[GridStrategy]:
        """The live strategy already trading symbol/side on this credential, if any."""
        for s in self.list_strategies(api_key=api_key):
            if s.symbol == symbol and s.position_side.value == position_side:
                return s
        return None

    # ----- orders -----

    async def upsert_order(self, order: Order) -> None:
        async with self._lock:
            self._require(order.strategy_id)
            self._orders.setdefault(order.strategy_id, {})[order.id] = order
            await self._persist(order.strategy_id)

    def list_orders(self, strategy_id: int) -> List[Order]:
        orders = self._orders.get(strategy_id, {}).values()
        return sorted(orders, key=lambda o: (o.created_at, o.id))

    def open_orders(self, strategy_id: int) -> List[Order]:
        return [o for o in self.list_orders(strategy_id) if o.status == OrderStatus.OPEN]

    def order_by_exchange_id(self, strategy_id: int, exchange_order_id: int) -> Optional[Order]:
        for o in self._orders.get(strategy_id, {}).values():
            if o.exchange_order_id == exchange_order_id:
                return o
        return None
