"""
Tests for StrategyStore persistence.
"""

import pytest

from gridengine.core.models import (
    ExecutionStatus,
    LevelIntent,
    Order,
    OrderSide,
    OrderStatus,
    PositionSide,
)
from gridengine.state.store import StrategyNotFoundError, StrategyStore

from conftest import make_strategy


class TestStrategies:
    """Tests for strategy records."""

    @pytest.mark.asyncio
    async def test_save_assigns_increasing_ids(self, state_dir):
        store = StrategyStore(state_dir)
        a = await store.save_strategy(make_strategy())
        b = await store.save_strategy(make_strategy(symbol="ETHUSDT"))
        assert (a.id, b.id) == (1, 2)
        assert store.get_strategy(2) is b

    @pytest.mark.asyncio
    async def test_reload_round_trip(self, state_dir):
        store = StrategyStore(state_dir)
        saved = await store.save_strategy(make_strategy(remark="night shift", max_position_quantity=0.01))
        await store.update_status(saved.id, ExecutionStatus.PRICE_ABOVE_MAX)

        fresh = StrategyStore(state_dir)
        assert await fresh.load_all() == 1
        loaded = fresh.get_strategy(saved.id)
        assert loaded.symbol == "BTCUSDT"
        assert loaded.position_side == PositionSide.LONG
        assert loaded.execution_status == ExecutionStatus.PRICE_ABOVE_MAX
        assert loaded.remark == "night shift"
        assert loaded.max_position_quantity == 0.01
        assert loaded.api_secret == "secret-alpha"

    @pytest.mark.asyncio
    async def test_ids_continue_after_reload(self, state_dir):
        store = StrategyStore(state_dir)
        await store.save_strategy(make_strategy())
        fresh = StrategyStore(state_dir)
        await fresh.load_all()
        again = await fresh.save_strategy(make_strategy(symbol="ETHUSDT"))
        assert again.id == 2

    @pytest.mark.asyncio
    async def test_deleted_is_hidden(self, state_dir):
        store = StrategyStore(state_dir)
        s = await store.save_strategy(make_strategy())
        s.deleted = True
        await store.save_strategy(s)
        with pytest.raises(StrategyNotFoundError):
            store.get_strategy(s.id)
        assert store.list_strategies() == []
        assert len(store.list_strategies(include_deleted=True)) == 1

    def test_missing_strategy(self, state_dir):
        with pytest.raises(KeyError):
            StrategyStore(state_dir).get_strategy(42)

    @pytest.mark.asyncio
    async def test_list_by_credential_and_find_active(self, state_dir):
        store = StrategyStore(state_dir)
        await store.save_strategy(make_strategy())
        await store.save_strategy(make_strategy(api_key="key-beta-0002", api_secret="s"))
        assert len(store.list_strategies(api_key="key-alpha-0001")) == 1
        assert store.find_active("key-alpha-0001", "BTCUSDT", "LONG") is not None
        assert store.find_active("key-alpha-0001", "BTCUSDT", "SHORT") is None

    @pytest.mark.asyncio
    async def test_load_empty_dir(self, state_dir):
        assert await StrategyStore(state_dir).load_all() == 0


class TestOrders:
    """Tests for order records."""

    @pytest.mark.asyncio
    async def test_upsert_and_reload(self, state_dir):
        store = StrategyStore(state_dir)
        s = await store.save_strategy(make_strategy())
        order = Order(s.id, OrderSide.BUY, 94000.0, 0.001, LevelIntent.OPEN, exchange_order_id=77)
        await store.upsert_order(order)
        order.status = OrderStatus.FILLED
        order.fee = 0.02
        await store.upsert_order(order)

        fresh = StrategyStore(state_dir)
        await fresh.load_all()
        orders = fresh.list_orders(s.id)
        assert len(orders) == 1
        assert orders[0].status == OrderStatus.FILLED
        assert orders[0].fee == 0.02
        assert fresh.order_by_exchange_id(s.id, 77).id == order.id
        assert fresh.open_orders(s.id) == []

    @pytest.mark.asyncio
    async def test_upsert_for_unknown_strategy(self, state_dir):
        store = StrategyStore(state_dir)
        with pytest.raises(StrategyNotFoundError):
            await store.upsert_order(Order(9, OrderSide.BUY, 1.0, 1.0, LevelIntent.OPEN))
