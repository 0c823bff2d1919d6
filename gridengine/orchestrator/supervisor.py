"""
StrategySupervisor: owns every Runner task in the process.

Maps strategy id -> Runner, exposes the control surface (create, pause,
resume, delete) and the read model. A Runner that dies unexpectedly is
caught by its task's done-callback and parked in OTHER_ERROR; siblings are
never touched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from gridengine.config.validator import ConfigurationError, ValidationIssue, validate_or_raise
from gridengine.core.event_bus import EventBus, StrategyEventType
from gridengine.core.models import AccountCredential, ExecutionStatus, GridStrategy, Order, ProfitSnapshot
from gridengine.exchange.binance_client import BinanceClientPool
from gridengine.exchange.symbol_info import SymbolInfoCache
from gridengine.execution.order_reconciler import OrderReconciler
from gridengine.execution.profit import compute_profit
from gridengine.infra.logging_cfg import log_event
from gridengine.market_data import MarkPriceFeed
from gridengine.monitoring.metrics_rich import RichMetrics
from gridengine.orchestrator.strategy_runner import RunnerConfig, StrategyRunner
from gridengine.state.store import StrategyStore

log = logging.getLogger("gridengine")


@dataclass
class _Entry:
    runner: StrategyRunner
    task: asyncio.Task


class StrategySupervisor:
    """
    Usage:
        sup = StrategySupervisor(store, pool, feed, bus)
        await sup.restore()
        strategy = await sup.create(strategy)
        await sup.pause(strategy.id)
        await sup.shutdown()
    """

    def __init__(
        self,
        store: StrategyStore,
        pool: BinanceClientPool,
        feed: Optional[MarkPriceFeed] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[RichMetrics] = None,
        reconciler: Optional[OrderReconciler] = None,
        symbols: Optional[SymbolInfoCache] = None,
        runner_config: Optional[RunnerConfig] = None,
        stop_timeout_sec: float = 30.0,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self.store = store
        self.pool = pool
        self.feed = feed
        self.bus = bus
        self.metrics = metrics
        self.reconciler = reconciler or OrderReconciler()
        self.symbols = symbols or SymbolInfoCache()
        self.runner_config = runner_config or RunnerConfig()
        self.stop_timeout_sec = stop_timeout_sec
        self._log_event = log_event_callback or self._default_log
        self._entries: Dict[int, _Entry] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._background: Set[asyncio.Task] = set()

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, **kwargs)

    # ------------------------------------------------------------------
    # Runner lifecycle
    # ------------------------------------------------------------------

    def _build_runner(self, strategy: GridStrategy) -> StrategyRunner:
        return StrategyRunner(
            strategy,
            client=self.pool.client_for(strategy.credential),
            feed=self.feed,
            store=self.store,
            reconciler=self.reconciler,
            symbols=self.symbols,
            bus=self.bus,
            metrics=self.metrics,
            lock=self._locks.setdefault(strategy.id, asyncio.Lock()),
            config=self.runner_config,
        )

    def start(self, strategy_id: int) -> StrategyRunner:
        """Spawn the Runner for strategy_id unless one is already alive."""
        entry = self._entries.get(strategy_id)
        if entry is not None and not entry.task.done():
            return entry.runner
        strategy = self.store.get_strategy(strategy_id)
        runner = self._build_runner(strategy)
        task = asyncio.create_task(runner.run(), name=f"runner-{strategy_id}")
        self._entries[strategy_id] = _Entry(runner, task)
        task.add_done_callback(lambda t, sid=strategy_id, r=runner: self._on_runner_done(sid, r, t))
        self._log_event("runner_spawned", strategy_id=strategy_id, symbol=strategy.symbol)
        self._update_gauge()
        return runner

    def _on_runner_done(self, strategy_id: int, runner: StrategyRunner, task: asyncio.Task) -> None:
        entry = self._entries.get(strategy_id)
        if entry is not None and entry.task is task:
            del self._entries[strategy_id]
        self._update_gauge()
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return

        log.error(
            "Runner for strategy %s crashed: %s",
            strategy_id,
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        runner.machine.apply(ExecutionStatus.OTHER_ERROR, reason=f"runner crashed: {exc}")
        if self.metrics:
            self.metrics.runners_crashed.labels(strategy=str(strategy_id)).inc()
            self.metrics.set_status(str(strategy_id), ExecutionStatus.OTHER_ERROR)
        if self.bus is not None:
            self.bus.emit(
                StrategyEventType.ERROR,
                strategy_id=strategy_id,
                symbol=runner.strategy.symbol,
                status=ExecutionStatus.OTHER_ERROR.value,
                kind="OTHER",
                crashed=True,
                message=f"{type(exc).__name__}: {exc}",
            )
        persist = asyncio.get_running_loop().create_task(self._persist_crash(strategy_id))
        self._background.add(persist)
        persist.add_done_callback(self._background.discard)

    async def _persist_crash(self, strategy_id: int) -> None:
        try:
            await self.store.update_status(strategy_id, ExecutionStatus.OTHER_ERROR)
        except KeyError:
            self._log_event("crash_status_skipped", strategy_id=strategy_id, reason="strategy deleted")

    def _update_gauge(self) -> None:
        if self.metrics:
            self.metrics.active_runners.set(len(self._entries))

    async def stop(self, strategy_id: int) -> None:
        """Stop at the next cycle boundary and wait for the task to finish."""
        entry = self._entries.get(strategy_id)
        if entry is None:
            return
        entry.runner.stop()
        try:
            await asyncio.wait_for(asyncio.shield(entry.task), timeout=self.stop_timeout_sec)
        except asyncio.TimeoutError:
            self._log_event("runner_stop_timeout", strategy_id=strategy_id)
            entry.task.cancel()
            await asyncio.gather(entry.task, return_exceptions=True)
        except Exception as exc:
            self._log_event("runner_stop_after_crash", strategy_id=strategy_id, err=str(exc))
        self._entries.pop(strategy_id, None)
        self._update_gauge()

    async def shutdown(self) -> None:
        ids = list(self._entries)
        for sid in ids:
            self._entries[sid].runner.stop()
        await asyncio.gather(*(self.stop(sid) for sid in ids))
        self._log_event("supervisor_shutdown", runners=len(ids))

    async def restore(self) -> int:
        """Reload persisted strategies and start every one that is not paused."""
        await self.store.load_all()
        started = 0
        for strategy in self.store.list_strategies():
            if strategy.paused or strategy.execution_status == ExecutionStatus.INIT_FAILED:
                continue
            self.start(strategy.id)
            started += 1
        self._log_event("supervisor_restored", strategies=len(self.store.list_strategies()), started=started)
        return started

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def create(self, strategy: GridStrategy) -> GridStrategy:
        """
        Validate, persist and (unless paused) start a new strategy.

        Raises:
            ConfigurationError: invalid definition, or the credential already
                runs a strategy on the same symbol and side.
        """
        strategy.symbol = strategy.symbol.upper()
        raw = strategy.to_dict()
        validate_or_raise(raw)
        existing = self.store.find_active(strategy.api_key, strategy.symbol, strategy.position_side.value)
        if existing is not None:
            raise ConfigurationError([ValidationIssue(
                "symbol",
                f"strategy {existing.id} already trades {strategy.symbol} {strategy.position_side.value} on this key",
                value=strategy.symbol,
            )])
        strategy.id = None
        strategy.deleted = False
        strategy.execution_status = ExecutionStatus.INITIALIZING
        saved = await self.store.save_strategy(strategy)
        self._log_event("strategy_created", strategy_id=saved.id, symbol=saved.symbol, side=saved.position_side.value)
        if not saved.paused:
            self.start(saved.id)
        return saved

    async def pause(self, strategy_id: int) -> GridStrategy:
        strategy = self.store.get_strategy(strategy_id)
        strategy.paused = True
        await self.store.save_strategy(strategy)
        entry = self._entries.get(strategy_id)
        if entry is not None:
            entry.runner.pause()
        self._log_event("strategy_paused", strategy_id=strategy_id)
        return strategy

    async def resume(self, strategy_id: int) -> GridStrategy:
        strategy = self.store.get_strategy(strategy_id)
        strategy.paused = False
        await self.store.save_strategy(strategy)
        runner = self.start(strategy_id)
        runner.resume()
        self._log_event("strategy_resumed", strategy_id=strategy_id)
        return strategy

    async def delete(self, strategy_id: int) -> None:
        """Stop the Runner and soft-delete the record. Resting orders are left as they are."""
        strategy = self.store.get_strategy(strategy_id)
        await self.stop(strategy_id)
        strategy.deleted = True
        await self.store.save_strategy(strategy)
        self._locks.pop(strategy_id, None)
        self.reconciler.forget(strategy_id)
        self._log_event("strategy_deleted", strategy_id=strategy_id)

    # ------------------------------------------------------------------
    # Read model (no side effects)
    # ------------------------------------------------------------------

    def runner(self, strategy_id: int) -> Optional[StrategyRunner]:
        entry = self._entries.get(strategy_id)
        return entry.runner if entry else None

    def is_running(self, strategy_id: int) -> bool:
        entry = self._entries.get(strategy_id)
        return entry is not None and not entry.task.done()

    def get_status(self, strategy_id: int) -> ExecutionStatus:
        entry = self._entries.get(strategy_id)
        if entry is not None:
            return entry.runner.status
        return self.store.get_strategy(strategy_id).execution_status

    def get_profit(self, strategy_id: int) -> ProfitSnapshot:
        strategy = self.store.get_strategy(strategy_id)
        entry = self._entries.get(strategy_id)
        mark = entry.runner.last_price if entry is not None else None
        return compute_profit(
            strategy.position_side,
            self.store.list_orders(strategy_id),
            funding_fee=strategy.funding_fee,
            mark_price=mark,
        )

    def list_orders(self, strategy_id: int) -> List[Order]:
        self.store.get_strategy(strategy_id)
        return self.store.list_orders(strategy_id)

    def list_strategies(self, credential: AccountCredential) -> List[GridStrategy]:
        return self.store.list_strategies(api_key=credential.api_key)

    def get_health(self, strategy_id: int) -> Dict[str, Any]:
        """Runner-side view: cycles, transient-error backoff and in-flight actions."""
        strategy = self.store.get_strategy(strategy_id)
        entry = self._entries.get(strategy_id)
        if entry is None:
            return {"strategy_id": strategy_id, "running": False, "status": strategy.execution_status.value}
        runner = entry.runner
        return {
            "strategy_id": strategy_id,
            "running": not entry.task.done(),
            "status": runner.status.value,
            "cycles": runner.cycle_count,
            "resume_pending": runner.resume_pending,
            "pending_actions": self.reconciler.pending_count(strategy_id),
            "breaker": runner.breaker.get_state(),
        }

    def __len__(self) -> int:
        return len(self._entries)
