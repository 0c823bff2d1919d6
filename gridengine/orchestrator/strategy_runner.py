"""
StrategyRunner: the per-strategy control loop.

One Runner owns one GridStrategy. Each cycle:

    1. price       feed cache, REST mark price when stale
    2. snapshot    account, position and open orders for symbol/side
    3. status      recompute execution_status, persist and emit on change
    4. trade       plan -> reconcile -> submit, when the mode allows it
    5. fills       local open orders missing from the snapshot are queried
    6. events      order / account / grid / error events on the EventBus

Paused and faulted cycles still run 1-3 and 5. A transient failure
(network, rate limit) re-runs the same cycle after a CircuitBreaker
cooldown. A config-level reject during initialization ends the Runner in
INIT_FAILED.

Usage:
    runner = StrategyRunner(strategy, client, feed, store, reconciler, symbols, bus)
    task = asyncio.create_task(runner.run())
    ...
    runner.stop()
    await task
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, List, Optional, Sequence, Set, Tuple

from gridengine.core.event_bus import EventBus, StrategyEventType
from gridengine.core.models import (
    AccountSnapshot,
    ExchangeOrder,
    ExecutionStatus,
    GridStrategy,
    LevelIntent,
    Order,
    OrderStatus,
    ProfitSnapshot,
    entry_side,
)
from gridengine.core.utils import now_ms, to_float
from gridengine.exchange.binance_client import BinanceFuturesClient
from gridengine.exchange.errors import ExchangeError, ExchangeErrorKind, RejectReason, classify_error
from gridengine.exchange.symbol_info import SymbolInfoCache, SymbolSpec
from gridengine.execution.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from gridengine.execution.execution_status import (
    FAULT_STATES,
    CycleSignals,
    ExecutionStatusMachine,
    TradingMode,
)
from gridengine.execution.order_reconciler import (
    Action,
    CancelAction,
    OrderReconciler,
    PlaceAction,
    ReconcileResult,
)
from gridengine.execution.profit import compute_profit
from gridengine.infra.logging_cfg import log_event
from gridengine.market_data import FeedSubscription, MarkPriceFeed
from gridengine.monitoring.metrics_rich import RichMetrics
from gridengine.state.store import StrategyStore
from gridengine.strategy.grid_planner import PlanContext, plan

log = logging.getLogger("gridengine")

_TRANSIENT = (ExchangeErrorKind.NETWORK, ExchangeErrorKind.RATE_LIMIT)


class CycleAction(Enum):
    """What the run loop does after a cycle."""
    CONTINUE = auto()  # sleep loop_interval, next cycle
    RETRY = auto()     # back off, re-run the same cycle
    STOP = auto()      # terminal, leave the loop


@dataclass
class CycleResult:
    """Result of a single Runner cycle."""
    success: bool
    action: CycleAction = CycleAction.CONTINUE
    status: Optional[ExecutionStatus] = None
    price: Optional[float] = None
    placed: int = 0
    cancelled: int = 0
    fills: int = 0
    duplicates: int = 0
    error: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class RunnerConfig:
    """Configuration for StrategyRunner."""
    # Sleep between cycles
    loop_interval_sec: float = 5.0

    # Sleep before re-running a failed cycle while the breaker is not tripped
    retry_delay_sec: float = 1.0

    # Funding income refresh
    funding_refresh_sec: float = 300.0

    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


class StrategyRunner:
    """
    Drives one strategy against the exchange until stopped.

    All collaborators are passed in; nothing here reaches for globals. The
    client, feed, reconciler and symbol cache are shared with sibling
    Runners, the lock is private to this strategy.
    """

    def __init__(
        self,
        strategy: GridStrategy,
        client: BinanceFuturesClient,
        feed: Optional[MarkPriceFeed],
        store: StrategyStore,
        reconciler: OrderReconciler,
        symbols: SymbolInfoCache,
        bus: Optional[EventBus] = None,
        metrics: Optional[RichMetrics] = None,
        lock: Optional[asyncio.Lock] = None,
        config: Optional[RunnerConfig] = None,
    ) -> None:
        self.strategy = strategy
        self.client = client
        self.feed = feed
        self.store = store
        self.reconciler = reconciler
        self.symbols = symbols
        self.bus = bus
        self.metrics = metrics
        self.lock = lock or asyncio.Lock()
        self.config = config or RunnerConfig()
        self._log_event = self.config.log_event_callback or self._default_log

        self.machine = ExecutionStatusMachine(log_event=self._log_event)
        self.breaker = CircuitBreaker(self.config.breaker, log_event=self._log_event)

        self._spec: Optional[SymbolSpec] = None
        self._initialized = False
        self._init_failed = False
        self._paused = strategy.paused
        self._resume_pending = False
        self._insufficient_balance = False
        self._stop = asyncio.Event()
        self._sub: Optional[FeedSubscription] = None
        self._last_error_key: Optional[Tuple[str, str]] = None
        self._last_funding_refresh = 0.0
        self._last_position: Optional[float] = None
        self._cycle_count = 0
        self._placed_this_cycle: Set[int] = set()

        self.last_price: Optional[float] = None
        self.last_snapshot: Optional[AccountSnapshot] = None

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, strategy_id=self.strategy.id, symbol=self.strategy.symbol, **kwargs)

    @property
    def strategy_id(self) -> int:
        return self.strategy.id

    @property
    def status(self) -> ExecutionStatus:
        return self.machine.status

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def resume_pending(self) -> bool:
        return self._resume_pending

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _label(self) -> str:
        return str(self.strategy.id)

    def _emit(self, event_type: StrategyEventType, **payload: Any) -> None:
        if self.bus is None:
            return
        self.bus.emit(
            event_type,
            strategy_id=self.strategy.id,
            symbol=self.strategy.symbol,
            position_side=self.strategy.position_side.value,
            **payload,
        )

    # ------------------------------------------------------------------
    # Control (takes effect at the next cycle boundary)
    # ------------------------------------------------------------------

    def pause(self) -> None:
        self._paused = True
        self._resume_pending = False
        self._log_event("runner_pause")

    def resume(self) -> None:
        """Unpause behind the duplicate gate: TRADING returns only on a clean book."""
        self._paused = False
        self._resume_pending = True
        self.breaker.force_reset()
        self._log_event("runner_resume")

    def stop(self) -> None:
        self._stop.set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        if self.feed is not None:
            self._sub = self.feed.subscribe(self.strategy.symbol)
        if self.metrics:
            self.metrics.runners_started.labels(strategy=self._label()).inc()
        self._log_event("runner_started", status=self.machine.status.value)
        try:
            while not self._stop.is_set():
                result = await self.run_cycle()
                if result.action == CycleAction.STOP:
                    break
                await self._sleep(self._next_delay(result))
        finally:
            if self._sub is not None and self.feed is not None:
                self.feed.unsubscribe(self._sub)
                self._sub = None
            self.reconciler.forget(self.strategy.id)
            self._log_event("runner_stopped", status=self.machine.status.value, cycles=self._cycle_count)

    def _next_delay(self, result: CycleResult) -> float:
        if result.action == CycleAction.RETRY:
            if self.breaker.is_tripped:
                return max(self.breaker.cooldown_remaining, self.config.retry_delay_sec)
            return self.config.retry_delay_sec
        return self.strategy.polling_interval_sec or self.config.loop_interval_sec

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run_cycle(self) -> CycleResult:
        """
        Execute one cycle.

        Never raises for exchange or unexpected failures: they are folded
        into execution_status. Only cancellation propagates.
        """
        start = time.perf_counter()
        result = CycleResult(success=True)
        fault: Optional[ExchangeError] = None
        unclassified: Optional[BaseException] = None
        price: Optional[float] = None
        snapshot: Optional[AccountSnapshot] = None
        open_orders: Optional[List[ExchangeOrder]] = None
        self._placed_this_cycle.clear()

        try:
            if not self._initialized:
                await self._initialize()
            price = await self._fetch_price()
            snapshot = await self.client.account_snapshot(self.strategy.symbol, self.strategy.position_side)
            open_orders = await self.client.open_orders(self.strategy.symbol, self.strategy.position_side)
        except Exception as exc:
            fault, unclassified = self._classify(exc, "snapshot")

        if fault is not None and fault.kind == ExchangeErrorKind.EXCHANGE_REJECT and not self._initialized:
            self._init_failed = True

        self.last_price = price if price is not None else self.last_price
        if snapshot is not None:
            self.last_snapshot = snapshot
            self._check_balance(snapshot, price)

        await self._update_status(price, snapshot, fault, unclassified)

        if self.machine.is_terminal:
            await self._on_init_failed(fault)
            result.success = False
            result.action = CycleAction.STOP
            result.status = self.machine.status
            result.error = fault.message if fault else None
            return self._finish(result, start)

        if fault is None and unclassified is None and open_orders is not None:
            try:
                short_of_margin = self._insufficient_balance
                await self._adopt_orphans(open_orders)
                await self._trade_step(price, snapshot, open_orders, result)
                if self._insufficient_balance != short_of_margin:
                    await self._update_status(price, snapshot, None, None)
            except Exception as exc:
                fault, unclassified = self._classify(exc, "trade")
                await self._update_status(price, snapshot, fault, unclassified)

            if fault is None or fault.kind not in (*_TRANSIENT, ExchangeErrorKind.AUTH):
                try:
                    result.fills = await self._detect_fills(open_orders)
                    await self._refresh_funding()
                except Exception as exc:
                    fault, unclassified = self._classify(exc, "fills")
                    await self._update_status(price, snapshot, fault, unclassified)

        if snapshot is not None and snapshot.position_amount != self._last_position:
            self._last_position = snapshot.position_amount
            self._emit(
                StrategyEventType.ACCOUNT,
                available_balance=snapshot.available_balance,
                position_amount=snapshot.position_amount,
                entry_price=snapshot.entry_price,
            )
            if self.metrics:
                self.metrics.position.labels(strategy=self._label()).set(snapshot.position_amount)

        result.price = price
        result.status = self.machine.status
        if fault is not None or unclassified is not None:
            result.success = False
            result.error = fault.message if fault is not None else str(unclassified)
        if fault is not None and fault.kind in _TRANSIENT:
            self.breaker.record_error("cycle", fault)
            result.action = CycleAction.RETRY
            self._log_event("cycle_retry", kind=fault.kind.value, err=fault.message)
        elif fault is None and unclassified is None:
            self.breaker.record_success()
            self._cycle_count += 1
        return self._finish(result, start)

    def _finish(self, result: CycleResult, start: float) -> CycleResult:
        result.duration_ms = (time.perf_counter() - start) * 1000
        if self.metrics:
            label = self._label()
            self.metrics.cycles_total.labels(strategy=label).inc()
            self.metrics.cycle_duration_ms.labels(strategy=label).observe(result.duration_ms)
            if result.price is not None:
                self.metrics.mark_price.labels(strategy=label).set(result.price)
        return result

    def _classify(self, exc: Exception, where: str) -> Tuple[Optional[ExchangeError], Optional[BaseException]]:
        err = classify_error(exc)
        if err is None:
            log.exception(
                "Unclassified failure in %s (strategy=%s symbol=%s)", where, self.strategy.id, self.strategy.symbol
            )
            if self.metrics:
                self.metrics.cycle_errors_total.labels(strategy=self._label(), kind="OTHER").inc()
            return None, exc
        self._log_event("cycle_fault", where=where, kind=err.kind.value, code=err.code, err=err.message)
        if self.metrics:
            self.metrics.cycle_errors_total.labels(strategy=self._label(), kind=err.kind.value).inc()
        return err, None

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _initialize(self) -> None:
        self._emit(StrategyEventType.INIT, phase="start")
        spec = await self.symbols.ensure(self.client, self.strategy.symbol)
        if spec is None or spec.status != "TRADING":
            raise ExchangeError(
                ExchangeErrorKind.EXCHANGE_REJECT,
                f"symbol {self.strategy.symbol} is not a tradable USDT-M perpetual",
                reason=RejectReason.INVALID_SYMBOL,
            )
        await self.client.set_leverage(self.strategy.symbol, self.strategy.leverage)
        self._spec = spec
        self._initialized = True
        if self.strategy.start_time is None:
            self.strategy.start_time = now_ms()
            await self.store.save_strategy(self.strategy)
        self._emit(StrategyEventType.EXCHANGE, action="leverage_set", leverage=self.strategy.leverage)
        self._emit(StrategyEventType.INIT, phase="ready", tick_size=spec.tick_size, step_size=spec.step_size)
        self._log_event("runner_initialized", tick_size=spec.tick_size, leverage=self.strategy.leverage)

    async def _fetch_price(self) -> float:
        px = self.feed.latest(self.strategy.symbol) if self.feed is not None else None
        if px is None:
            px = await self.client.mark_price(self.strategy.symbol)
            self._log_event("price_fallback_rest", price=px)
            if self.metrics:
                self.metrics.price_fallback_rest.labels(strategy=self._label()).inc()
            if self.feed is not None and px > 0:
                self.feed.publish(self.strategy.symbol, px)
        if px is None or px <= 0:
            raise ExchangeError(ExchangeErrorKind.NETWORK, "no usable mark price")
        return px

    def _check_balance(self, snapshot: AccountSnapshot, price: Optional[float]) -> None:
        """Flag when the initial margin of one more open order is not available, clear once it is."""
        if not price:
            return
        required = self.strategy.open_qty * price / max(self.strategy.leverage, 1)
        short = snapshot.available_balance < required
        if short == self._insufficient_balance:
            return
        self._insufficient_balance = short
        self._log_event(
            "balance_insufficient" if short else "balance_recovered",
            available=snapshot.available_balance,
            required=required,
        )

    async def _update_status(
        self,
        price: Optional[float],
        snapshot: Optional[AccountSnapshot],
        fault: Optional[ExchangeError],
        unclassified: Optional[BaseException],
    ) -> None:
        signals = CycleSignals(
            price=price,
            price_min=self.strategy.price_min,
            price_max=self.strategy.price_max,
            paused=self._paused,
            resume_pending=self._resume_pending,
            initialized=self._initialized,
            init_failed=self._init_failed,
            error_kind=fault.kind if fault is not None else None,
            unclassified_error=unclassified is not None,
            insufficient_balance=self._insufficient_balance,
            position_amount=snapshot.position_amount if snapshot else 0.0,
            entry_price=snapshot.entry_price if snapshot else 0.0,
            above_open_enabled=self.strategy.is_above_open_price,
            below_open_enabled=self.strategy.is_below_open_price,
        )
        message = fault.message if fault is not None else (str(unclassified) if unclassified else None)
        transition = self.machine.update(signals, reason=message)
        status = self.machine.status

        if transition is not None:
            self._emit(
                StrategyEventType.GRID,
                action="status",
                from_status=transition.from_status.value,
                to_status=transition.to_status.value,
                reason=transition.reason,
            )
            self._log_event(
                "execution_status_changed",
                from_status=transition.from_status.value,
                to_status=transition.to_status.value,
                reason=transition.reason,
            )
            if self.metrics:
                self.metrics.set_status(self._label(), status)

        if status != self.strategy.execution_status:
            await self.store.update_status(self.strategy.id, status)

        if status in FAULT_STATES:
            key = (status.value, message or "")
            if key != self._last_error_key:
                self._last_error_key = key
                self._emit(
                    StrategyEventType.ERROR,
                    status=status.value,
                    kind=fault.kind.value if fault is not None else "OTHER",
                    code=fault.code if fault is not None else None,
                    message=message or status.value,
                )
        else:
            self._last_error_key = None

    async def _on_init_failed(self, fault: Optional[ExchangeError]) -> None:
        message = fault.message if fault is not None else "initialization failed"
        self._emit(StrategyEventType.INIT, phase="failed", status=ExecutionStatus.INIT_FAILED.value, message=message)
        self._log_event("runner_init_failed", err=message, code=fault.code if fault else None)

    async def _trade_step(
        self,
        price: float,
        snapshot: AccountSnapshot,
        open_orders: Sequence[ExchangeOrder],
        result: CycleResult,
    ) -> None:
        if self._resume_pending and not self._paused:
            if not await self._resume_gate(open_orders, result):
                return
            await self._update_status(price, snapshot, None, None)

        mode = self.machine.mode
        if mode == TradingMode.NONE:
            return

        # Short of margin: resting opens stay on the book, no new ones are sent.
        hold_opens = self.machine.status == ExecutionStatus.INSUFFICIENT_BALANCE
        spec = self._spec
        open_allowed = (mode == TradingMode.FULL or hold_opens) and not self._position_capped(snapshot)
        ctx = PlanContext(
            tick_size=spec.tick_size,
            step_size=spec.step_size,
            open_allowed=open_allowed,
            position_qty=snapshot.position_amount,
            entry_price=snapshot.entry_price,
        )
        target = frozenset(lv for lv in plan(self.strategy, price, ctx) if spec.quantity_valid(lv.quantity, lv.price))

        if self.metrics:
            label = self._label()
            opens = sum(1 for lv in target if lv.intent == LevelIntent.OPEN)
            self.metrics.target_levels.labels(strategy=label, intent="open").set(opens)
            self.metrics.target_levels.labels(strategy=label, intent="close").set(len(target) - opens)

        async with self.lock:
            rec = self.reconciler.reconcile(self.strategy.id, target, open_orders, tolerance=spec.tick_size)
            if rec.actions:
                self._emit(
                    StrategyEventType.GRID,
                    action="reconcile",
                    price=price,
                    target=len(target),
                    places=len(rec.places),
                    cancels=len(rec.cancels),
                    matched=rec.matched,
                    duplicates=rec.duplicates,
                )
            await self._submit(rec, result, skip_opens=hold_opens)

    def _position_capped(self, snapshot: AccountSnapshot) -> bool:
        cap = self.strategy.max_position_quantity
        return cap is not None and snapshot.position_amount >= cap

    async def _resume_gate(self, open_orders: Sequence[ExchangeOrder], result: CycleResult) -> bool:
        """Cancel duplicate orders left behind while paused. True once the book is clean."""
        tick = self._spec.tick_size
        async with self.lock:
            rec = self.reconciler.reconcile_duplicates(self.strategy.id, open_orders, tolerance=tick)
            result.duplicates = rec.duplicates
            if rec.duplicates == 0:
                self._resume_pending = False
                self._log_event("resume_gate_cleared")
                return True
            self._log_event("resume_gate_duplicates", duplicates=rec.duplicates, cancels=len(rec.cancels))
            await self._submit(rec, result)
            if self.metrics:
                self.metrics.duplicates_cancelled.labels(strategy=self._label()).inc(result.cancelled)
        return False

    async def _submit(self, rec: ReconcileResult, result: CycleResult, skip_opens: bool = False) -> None:
        """
        Apply actions in order. A definite reject releases the pending entry
        and moves on; auth and transport failures abort the batch. With
        skip_opens, new open placements are released unsent.

        Raises:
            ExchangeError: AUTH, NETWORK or RATE_LIMIT while submitting.
        """
        for i, action in enumerate(rec.actions):
            if skip_opens and isinstance(action, PlaceAction) and action.level.intent == LevelIntent.OPEN:
                self.reconciler.release(self.strategy.id, action)
                continue
            try:
                if isinstance(action, CancelAction):
                    await asyncio.shield(self._cancel(action))
                    result.cancelled += 1
                else:
                    await asyncio.shield(self._place(action))
                    result.placed += 1
            except ExchangeError as err:
                # a NETWORK failure may still have landed; its entry waits for the snapshot or the TTL
                if err.kind != ExchangeErrorKind.NETWORK:
                    self.reconciler.release(self.strategy.id, action)
                if err.kind != ExchangeErrorKind.EXCHANGE_REJECT:
                    for untried in rec.actions[i + 1:]:
                        self.reconciler.release(self.strategy.id, untried)
                    raise
                if err.insufficient_balance:
                    self._insufficient_balance = True
                    skip_opens = True
                self._on_reject(action, err)

    def _on_reject(self, action: Action, err: ExchangeError) -> None:
        reason = err.reason.value if err.reason else "OTHER"
        if isinstance(action, CancelAction):
            self._log_event("cancel_rejected", order_id=action.order.order_id, code=err.code, reason=reason)
        else:
            self._log_event(
                "order_rejected",
                side=action.level.side.value,
                price=action.level.price,
                intent=action.level.intent.value,
                code=err.code,
                reason=reason,
                err=err.message,
            )
            self._emit(StrategyEventType.EXCHANGE, action="reject", code=err.code, reason=reason, price=action.level.price)
        if self.metrics:
            self.metrics.orders_rejected.labels(strategy=self._label(), reason=reason).inc()

    def _client_order_id(self) -> str:
        return f"{self._client_prefix()}{uuid.uuid4().hex[:20]}"

    def _client_prefix(self) -> str:
        return f"g{self.strategy.id}x"

    async def _place(self, action: PlaceAction) -> Order:
        lv = action.level
        client_id = self._client_order_id()
        t0 = time.perf_counter()
        resp = await self.client.place_limit_order(
            self.strategy.symbol,
            lv.side,
            self.strategy.position_side,
            lv.quantity,
            lv.price,
            client_order_id=client_id,
        )
        order = Order(
            strategy_id=self.strategy.id,
            side=lv.side,
            price=lv.price,
            quantity=lv.quantity,
            intent=lv.intent,
            exchange_order_id=int(resp["orderId"]),
            client_order_id=client_id,
        )
        self._placed_this_cycle.add(order.exchange_order_id)
        await self.store.upsert_order(order)
        self._emit(
            StrategyEventType.ORDER,
            action="place",
            order_id=order.exchange_order_id,
            side=lv.side.value,
            intent=lv.intent.value,
            price=lv.price,
            quantity=lv.quantity,
        )
        if self.metrics:
            label = self._label()
            self.metrics.orders_placed.labels(strategy=label, side=lv.side.value, intent=lv.intent.value).inc()
            self.metrics.order_latency_ms.labels(strategy=label).observe((time.perf_counter() - t0) * 1000)
        return order

    async def _cancel(self, action: CancelAction) -> None:
        order_id = action.order.order_id
        await self.client.cancel_order(self.strategy.symbol, order_id)
        local = self.store.order_by_exchange_id(self.strategy.id, order_id)
        if local is not None and local.status == OrderStatus.OPEN:
            local.status = OrderStatus.CANCELLED
            local.updated_at = now_ms()
            await self.store.upsert_order(local)
        self._emit(StrategyEventType.ORDER, action="cancel", order_id=order_id, reason=action.reason, price=action.order.price)
        if self.metrics:
            self.metrics.orders_cancelled.labels(strategy=self._label(), reason=action.reason).inc()

    async def _adopt_orphans(self, open_orders: Sequence[ExchangeOrder]) -> int:
        """Record resting orders this strategy placed but never stored (ambiguous submits)."""
        prefix = self._client_prefix()
        adopted = 0
        for eo in open_orders:
            if not eo.client_order_id.startswith(prefix):
                continue
            if self.store.order_by_exchange_id(self.strategy.id, eo.order_id) is not None:
                continue
            intent = LevelIntent.OPEN if eo.side == entry_side(self.strategy.position_side) else LevelIntent.CLOSE
            await self.store.upsert_order(Order(
                strategy_id=self.strategy.id,
                side=eo.side,
                price=eo.price,
                quantity=eo.orig_qty,
                intent=intent,
                exchange_order_id=eo.order_id,
                client_order_id=eo.client_order_id,
            ))
            adopted += 1
            self._log_event("order_adopted", order_id=eo.order_id, price=eo.price)
        return adopted

    async def _detect_fills(self, open_orders: Sequence[ExchangeOrder]) -> int:
        live = {o.order_id for o in open_orders}
        fills = 0
        for local in self.store.open_orders(self.strategy.id):
            if local.exchange_order_id is None or local.exchange_order_id in live:
                continue
            if local.exchange_order_id in self._placed_this_cycle:
                continue
            if await self._settle_order(local):
                fills += 1
        if fills:
            profit = self.profit()
            self._emit(StrategyEventType.ACCOUNT, action="profit", **profit.to_dict())
            if self.metrics:
                self.metrics.realized_pnl.labels(strategy=self._label()).set(profit.total_profit_loss)
        return fills

    async def _settle_order(self, local: Order) -> bool:
        """Resolve an order that left the book. Returns True if it filled."""
        try:
            raw = await self.client.query_order(self.strategy.symbol, local.exchange_order_id)
        except ExchangeError as err:
            if err.reason != RejectReason.UNKNOWN_ORDER:
                raise
            raw = {"status": "CANCELED", "executedQty": 0}

        status = str(raw.get("status", ""))
        executed = to_float(raw.get("executedQty"))
        if status in ("NEW", "PARTIALLY_FILLED"):
            return False

        local.updated_at = int(raw.get("updateTime") or now_ms())
        filled = status == "FILLED" or executed > 0
        if filled:
            trades = await self.client.user_trades(self.strategy.symbol, local.exchange_order_id)
            local.status = OrderStatus.FILLED
            local.executed_qty = executed or local.quantity
            local.avg_price = to_float(raw.get("avgPrice")) or local.price
            local.fee = sum(to_float(t.get("commission")) for t in trades)
        else:
            local.status = OrderStatus.CANCELLED
        await self.store.upsert_order(local)

        if filled:
            self._emit(
                StrategyEventType.ORDER,
                action="fill",
                order_id=local.exchange_order_id,
                side=local.side.value,
                intent=local.intent.value,
                price=local.avg_price,
                quantity=local.executed_qty,
                fee=local.fee,
            )
            self._log_event(
                "order_filled",
                order_id=local.exchange_order_id,
                side=local.side.value,
                intent=local.intent.value,
                px=local.avg_price,
                qty=local.executed_qty,
            )
            if self.metrics:
                self.metrics.fills_total.labels(strategy=self._label(), side=local.side.value).inc()
        return filled

    async def _refresh_funding(self) -> None:
        now = time.monotonic()
        if self._last_funding_refresh and now - self._last_funding_refresh < self.config.funding_refresh_sec:
            return
        self._last_funding_refresh = now
        rows = await self.client.funding_income(self.strategy.symbol, start_time=self.strategy.start_time)
        total = sum(to_float(r.get("income")) for r in rows)
        if abs(total - self.strategy.funding_fee) > 1e-12:
            self.strategy.funding_fee = total
            await self.store.save_strategy(self.strategy)
            if self.metrics:
                self.metrics.funding_fee.labels(strategy=self._label()).set(total)

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    def profit(self) -> ProfitSnapshot:
        return compute_profit(
            self.strategy.position_side,
            self.store.list_orders(self.strategy.id),
            funding_fee=self.strategy.funding_fee,
            mark_price=self.last_price,
        )
