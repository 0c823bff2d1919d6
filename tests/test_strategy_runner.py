"""
Tests for StrategyRunner - the per-strategy control loop.

Tests cover:
- Initialization (leverage, symbol checks, INIT_FAILED)
- Grid placement and idempotent re-runs
- Fault handling (auth, network, unclassified, insufficient margin)
- Price band and open-price sub-states
- Pause, resume and the duplicate gate
- Fill detection and profit
"""

import asyncio

import pytest

from gridengine.core.event_bus import EventBus, StrategyEventType
from gridengine.core.models import ExecutionStatus, OrderSide, OrderStatus
from gridengine.exchange.errors import ExchangeError, ExchangeErrorKind, classify_response
from gridengine.exchange.symbol_info import SymbolInfoCache
from gridengine.execution.order_reconciler import OrderReconciler
from gridengine.monitoring.metrics_rich import RichMetrics
from gridengine.orchestrator.strategy_runner import CycleAction, CycleResult, RunnerConfig, StrategyRunner
from gridengine.state.store import StrategyStore

from conftest import FakeExchange, auth_error, make_strategy

S = ExecutionStatus


def _quiet(*args, **kwargs):
    pass


async def build_runner(tmp_path, exchange=None, metrics=None, **overrides):
    store = StrategyStore(str(tmp_path / "state"))
    strategy = await store.save_strategy(make_strategy(**overrides))
    return StrategyRunner(
        strategy,
        client=exchange or FakeExchange(),
        feed=None,
        store=store,
        reconciler=OrderReconciler(pending_ttl_sec=30),
        symbols=SymbolInfoCache(),
        bus=EventBus(log_event=_quiet),
        metrics=metrics,
        config=RunnerConfig(loop_interval_sec=0.01, retry_delay_sec=0.01),
    )


async def events(runner, event_type):
    await runner.bus.drain()
    return runner.bus.get_history(event_type)


class TestInitialization:
    """Tests for the first cycle."""

    @pytest.mark.asyncio
    async def test_first_cycle_places_opens(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        result = await runner.run_cycle()

        assert result.success
        assert result.status == S.TRADING
        assert ex.leverage_calls == [10]
        assert sorted(p["price"] for p in ex.placed) == [90000.0, 91000.0, 92000.0, 93000.0, 94000.0]
        assert all(p["side"] == OrderSide.BUY for p in ex.placed)
        assert result.placed == 5
        assert runner.strategy.start_time is not None
        assert runner.store.get_strategy(runner.strategy_id).execution_status == S.TRADING

        phases = [e.payload["phase"] for e in await events(runner, StrategyEventType.INIT)]
        assert phases == ["start", "ready"]
        assert len(await events(runner, StrategyEventType.EXCHANGE)) == 1

    @pytest.mark.asyncio
    async def test_second_cycle_is_idempotent(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        result = await runner.run_cycle()
        assert result.placed == 0
        assert result.cancelled == 0
        assert len(ex.placed) == 5
        assert ex.leverage_calls == [10]
        assert runner.cycle_count == 2

    @pytest.mark.asyncio
    async def test_orders_recorded_locally(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        local = runner.store.open_orders(runner.strategy_id)
        assert {o.exchange_order_id for o in local} == set(ex.book)
        assert all(o.client_order_id.startswith(f"g{runner.strategy_id}x") for o in local)

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_init_failed(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex, symbol="XRPUSDT")
        result = await runner.run_cycle()
        assert result.action == CycleAction.STOP
        assert runner.status == S.INIT_FAILED
        assert ex.leverage_calls == []
        assert ex.placed == []
        assert runner.store.get_strategy(runner.strategy_id).execution_status == S.INIT_FAILED
        phases = [e.payload["phase"] for e in await events(runner, StrategyEventType.INIT)]
        assert phases == ["start", "failed"]

    @pytest.mark.asyncio
    async def test_leverage_reject_is_init_failed(self, tmp_path):
        ex = FakeExchange()
        ex.fail["set_leverage"] = classify_response(400, {"code": -4028, "msg": "Leverage 10 is not valid"})
        runner = await build_runner(tmp_path, ex)
        result = await runner.run_cycle()
        assert result.action == CycleAction.STOP
        assert runner.status == S.INIT_FAILED
        # terminal: later cycles change nothing
        ex.fail.clear()
        await runner.run_cycle()
        assert runner.status == S.INIT_FAILED
        assert ex.placed == []

    @pytest.mark.asyncio
    async def test_run_exits_after_init_failure(self, tmp_path):
        runner = await build_runner(tmp_path, symbol="XRPUSDT")
        await asyncio.wait_for(runner.run(), timeout=2.0)
        assert runner.status == S.INIT_FAILED

    @pytest.mark.asyncio
    async def test_auth_during_init_retries_init(self, tmp_path):
        ex = FakeExchange()
        ex.fail["set_leverage"] = auth_error()
        runner = await build_runner(tmp_path, ex)
        result = await runner.run_cycle()
        assert result.status == S.API_KEY_INVALID
        assert result.action == CycleAction.CONTINUE
        ex.fail.clear()
        result = await runner.run_cycle()
        assert result.status == S.TRADING
        assert ex.leverage_calls == [10]


class TestFaults:
    """Tests for fault classification into execution status."""

    @pytest.mark.asyncio
    async def test_auth_failure(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        ex.fail["account_snapshot"] = auth_error()
        first = await runner.run_cycle()
        second = await runner.run_cycle()

        assert first.status == S.API_KEY_INVALID
        assert second.status == S.API_KEY_INVALID
        assert len(ex.placed) == 5
        assert ex.cancelled == []
        errors = await events(runner, StrategyEventType.ERROR)
        assert len(errors) == 1
        assert errors[0].payload["status"] == "API_KEY_INVALID"
        assert errors[0].payload["kind"] == "AUTH"

    @pytest.mark.asyncio
    async def test_network_failure_retries_then_recovers(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        ex.fail["open_orders"] = ExchangeError(ExchangeErrorKind.NETWORK, "ReadTimeout")
        result = await runner.run_cycle()
        assert result.action == CycleAction.RETRY
        assert result.status == S.NETWORK_ERROR
        assert runner.breaker.error_streak == 1

        del ex.fail["open_orders"]
        result = await runner.run_cycle()
        assert result.status == S.TRADING
        assert runner.breaker.error_streak == 0
        assert len(ex.placed) == 5

    @pytest.mark.asyncio
    async def test_network_failure_while_placing(self, tmp_path):
        ex = FakeExchange()
        ex.fail["place_limit_order"] = ExchangeError(ExchangeErrorKind.NETWORK, "ConnectError")
        runner = await build_runner(tmp_path, ex)
        result = await runner.run_cycle()
        assert result.action == CycleAction.RETRY
        assert result.status == S.NETWORK_ERROR
        # the first level stays pending, the untried ones are released
        assert runner.reconciler.pending_count(runner.strategy_id) == 1

        del ex.fail["place_limit_order"]
        result = await runner.run_cycle()
        assert result.status == S.TRADING
        assert result.placed == 4

    @pytest.mark.asyncio
    async def test_unclassified_failure(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        ex.fail["account_snapshot"] = RuntimeError("boom")
        result = await runner.run_cycle()
        assert not result.success
        assert result.status == S.OTHER_ERROR
        assert result.action == CycleAction.CONTINUE
        errors = await events(runner, StrategyEventType.ERROR)
        assert errors[-1].payload["kind"] == "OTHER"

        del ex.fail["account_snapshot"]
        assert (await runner.run_cycle()).status == S.TRADING

    @pytest.mark.asyncio
    async def test_read_path_reject_is_surfaced(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        ex.fail["open_orders"] = classify_response(400, {"code": -1100, "msg": "Illegal characters found in parameter"})
        results = [await runner.run_cycle() for _ in range(3)]

        assert [r.status for r in results] == [S.OTHER_ERROR] * 3
        assert all(not r.success and r.action == CycleAction.CONTINUE for r in results)
        assert runner.store.get_strategy(runner.strategy_id).execution_status == S.OTHER_ERROR
        errors = await events(runner, StrategyEventType.ERROR)
        assert len(errors) == 1
        assert errors[0].payload["kind"] == "EXCHANGE_REJECT"
        assert errors[0].payload["code"] == -1100

        del ex.fail["open_orders"]
        assert (await runner.run_cycle()).status == S.TRADING

    @pytest.mark.asyncio
    async def test_fill_query_reject_is_surfaced(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        buy_id = ex.orders_at(94000.0)[0].order_id
        ex.fill(buy_id)
        ex.fail["query_order"] = classify_response(400, {"code": -1102, "msg": "Mandatory parameter was not sent"})
        result = await runner.run_cycle()
        assert result.status == S.OTHER_ERROR
        assert result.fills == 0

        del ex.fail["query_order"]
        result = await runner.run_cycle()
        assert result.status == S.TRADING
        assert result.fills == 1

    @pytest.mark.asyncio
    async def test_margin_reject(self, tmp_path):
        ex = FakeExchange()
        ex.fail["place_limit_order"] = classify_response(400, {"code": -2019, "msg": "Margin is insufficient."})
        runner = await build_runner(tmp_path, ex)
        result = await runner.run_cycle()
        assert result.status == S.INSUFFICIENT_BALANCE
        assert result.placed == 0
        assert runner.reconciler.pending_count(runner.strategy_id) == 0

        ex.fail.clear()
        result = await runner.run_cycle()
        assert result.status == S.TRADING
        assert result.placed == 5

    @pytest.mark.asyncio
    async def test_balance_checked_before_opening(self, tmp_path):
        ex = FakeExchange(balance=0.0)
        runner = await build_runner(tmp_path, ex)
        result = await runner.run_cycle()
        assert result.status == S.INSUFFICIENT_BALANCE
        assert ex.placed == []

        # one open at 95000 with 10x needs 9.5 USDT
        ex.balance = 9.0
        assert (await runner.run_cycle()).status == S.INSUFFICIENT_BALANCE
        ex.balance = 10.0
        result = await runner.run_cycle()
        assert result.status == S.TRADING
        assert result.placed == 5

    @pytest.mark.asyncio
    async def test_short_of_margin_keeps_resting_opens(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        ex.balance = 0.0
        result = await runner.run_cycle()
        assert result.status == S.INSUFFICIENT_BALANCE
        assert result.cancelled == 0
        assert len(ex.book) == 5

        buy_id = ex.orders_at(94000.0)[0].order_id
        ex.fill(buy_id)
        ex.position, ex.entry_price = 0.001, 94000.0
        result = await runner.run_cycle()
        assert result.fills == 1
        # the close goes out, the filled open is not re-armed
        assert result.placed == 1
        assert len(ex.orders_at(96000.0)) == 1
        assert ex.orders_at(94000.0) == []


class TestPriceStates:
    """Tests for band and open-price sub-states."""

    @pytest.mark.asyncio
    async def test_price_above_max(self, tmp_path):
        ex = FakeExchange(price=101000.0)
        runner = await build_runner(tmp_path, ex)
        result = await runner.run_cycle()
        assert result.status == S.PRICE_ABOVE_MAX
        assert ex.placed == []

    @pytest.mark.asyncio
    async def test_price_below_min_keeps_closes(self, tmp_path):
        ex = FakeExchange(price=89000.0, position=0.002, entry_price=91000.0)
        runner = await build_runner(tmp_path, ex)
        result = await runner.run_cycle()
        assert result.status == S.PRICE_BELOW_MIN
        assert sorted(p["price"] for p in ex.placed) == [90000.0, 91000.0]
        assert all(p["side"] == OrderSide.SELL for p in ex.placed)

    @pytest.mark.asyncio
    async def test_band_exit_and_return(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        ex.price = 101000.0
        result = await runner.run_cycle()
        assert result.status == S.PRICE_ABOVE_MAX
        assert result.cancelled == 5
        assert ex.book == {}

        ex.price = 95000.0
        result = await runner.run_cycle()
        assert result.status == S.TRADING
        assert result.placed == 5

    @pytest.mark.asyncio
    async def test_price_above_open(self, tmp_path):
        ex = FakeExchange(position=0.001, entry_price=94000.0)
        runner = await build_runner(tmp_path, ex, is_above_open_price=True)
        result = await runner.run_cycle()
        assert result.status == S.PRICE_ABOVE_OPEN
        assert [(p["side"], p["price"]) for p in ex.placed] == [(OrderSide.SELL, 96000.0)]

    @pytest.mark.asyncio
    async def test_position_cap_blocks_opens(self, tmp_path):
        ex = FakeExchange(position=0.001, entry_price=94000.0)
        runner = await build_runner(tmp_path, ex, max_position_quantity=0.001)
        result = await runner.run_cycle()
        assert result.status == S.TRADING
        assert [(p["side"], p["price"]) for p in ex.placed] == [(OrderSide.SELL, 96000.0)]


class TestPauseResume:
    """Tests for manual pause and the resume gate."""

    @pytest.mark.asyncio
    async def test_pause_stops_placing(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex, paused=True)
        result = await runner.run_cycle()
        assert result.status == S.PAUSED_MANUAL
        assert ex.placed == []
        assert ex.leverage_calls == [10]

    @pytest.mark.asyncio
    async def test_resume_waits_for_clean_book(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        runner.pause()
        assert (await runner.run_cycle()).status == S.PAUSED_MANUAL

        dup = ex.rest(OrderSide.BUY, 94000.0)
        runner.resume()
        result = await runner.run_cycle()
        assert result.status == S.PAUSED_MANUAL
        assert result.duplicates == 1
        assert ex.cancelled == [dup.order_id]
        assert runner.resume_pending

        result = await runner.run_cycle()
        assert result.status == S.TRADING
        assert not runner.resume_pending
        assert result.placed == 0
        assert len(ex.book) == 5

    @pytest.mark.asyncio
    async def test_resume_on_clean_book_trades_immediately(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex, paused=True)
        await runner.run_cycle()
        runner.resume()
        result = await runner.run_cycle()
        assert result.status == S.TRADING
        assert result.placed == 5

    @pytest.mark.asyncio
    async def test_resume_clears_backoff(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        ex.fail["open_orders"] = ExchangeError(ExchangeErrorKind.NETWORK, "ReadTimeout")
        for _ in range(runner.config.breaker.error_threshold):
            await runner.run_cycle()
        assert runner.breaker.is_tripped

        runner.pause()
        runner.resume()
        assert not runner.breaker.is_tripped
        assert runner.breaker.get_state()["error_streak"] == 0


class TestFills:
    """Tests for fill detection and profit."""

    @pytest.mark.asyncio
    async def test_round_trip_profit(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()

        buy_id = ex.orders_at(94000.0)[0].order_id
        ex.fill(buy_id, fee=0.01)
        ex.position, ex.entry_price = 0.001, 94000.0
        result = await runner.run_cycle()
        assert result.fills == 1
        filled = runner.store.order_by_exchange_id(runner.strategy_id, buy_id)
        assert filled.status == OrderStatus.FILLED
        assert filled.fee == pytest.approx(0.01)
        # the close above price and the re-armed open
        assert result.placed == 2
        assert len(ex.orders_at(96000.0)) == 1
        assert len(ex.orders_at(94000.0)) == 1

        sell_id = ex.orders_at(96000.0)[0].order_id
        ex.fill(sell_id, fee=0.01)
        ex.position, ex.entry_price = 0.0, 0.0
        result = await runner.run_cycle()
        assert result.fills == 1

        profit = runner.profit()
        assert profit.total_trades == 2
        assert profit.total_pairing_times == 1
        assert profit.total_fee == pytest.approx(0.02)
        assert profit.total_profit_loss == pytest.approx(1.98)

        fills = [e for e in await events(runner, StrategyEventType.ORDER) if e.payload["action"] == "fill"]
        assert len(fills) == 2

    @pytest.mark.asyncio
    async def test_cancelled_elsewhere(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        gone = ex.orders_at(90000.0)[0].order_id
        del ex.book[gone]
        result = await runner.run_cycle()
        assert result.fills == 0
        assert runner.store.order_by_exchange_id(runner.strategy_id, gone).status == OrderStatus.CANCELLED
        assert result.placed == 1

    @pytest.mark.asyncio
    async def test_funding_refreshed(self, tmp_path):
        ex = FakeExchange()
        ex.funding_rows = [{"income": "-0.12"}, {"income": "0.02"}]
        runner = await build_runner(tmp_path, ex)
        await runner.run_cycle()
        assert runner.strategy.funding_fee == pytest.approx(-0.10)
        assert runner.profit().funding_fee == pytest.approx(-0.10)

    @pytest.mark.asyncio
    async def test_orphans_adopted(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        orphan = ex.rest(OrderSide.BUY, 93000.0, client_order_id=f"g{runner.strategy_id}xdeadbeef")
        foreign = ex.rest(OrderSide.BUY, 92000.0, client_order_id="manual-1")
        await runner.run_cycle()
        assert runner.store.order_by_exchange_id(runner.strategy_id, orphan.order_id) is not None
        assert runner.store.order_by_exchange_id(runner.strategy_id, foreign.order_id) is None
        assert 93000.0 not in [p["price"] for p in ex.placed]


class TestRunLoop:
    """Tests for run() and stop()."""

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, tmp_path):
        ex = FakeExchange()
        runner = await build_runner(tmp_path, ex)
        task = asyncio.create_task(runner.run())
        for _ in range(100):
            if runner.cycle_count >= 2:
                break
            await asyncio.sleep(0.01)
        runner.stop()
        await asyncio.wait_for(task, timeout=2.0)
        assert runner.cycle_count >= 2
        assert runner.stopping
        assert len(ex.placed) == 5
        assert runner.reconciler.pending_count(runner.strategy_id) == 0

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, tmp_path):
        metrics = RichMetrics()
        runner = await build_runner(tmp_path, FakeExchange(), metrics=metrics)
        await runner.run_cycle()
        registry = metrics.get_registry()
        placed = registry.get_sample_value(
            "orders_placed_total", {"strategy": str(runner.strategy_id), "side": "BUY", "intent": "open"}
        )
        assert placed == 5

    @pytest.mark.asyncio
    async def test_strategy_polling_interval(self, tmp_path):
        runner = await build_runner(tmp_path, polling_interval_sec=2.5)
        assert runner._next_delay(CycleResult(success=True)) == 2.5
        runner.strategy.polling_interval_sec = None
        assert runner._next_delay(CycleResult(success=True)) == 0.01
        # retries keep the short delay
        assert runner._next_delay(CycleResult(success=False, action=CycleAction.RETRY)) == 0.01
