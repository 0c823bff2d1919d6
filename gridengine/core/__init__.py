"""
Core package.

Domain records, the strategy event bus, and small numeric and JSON helpers.
"""

from gridengine.core.event_bus import EventBus, StrategyEvent, StrategyEventType, Subscription
from gridengine.core.models import (
    AccountCredential,
    AccountSnapshot,
    ExchangeOrder,
    ExecutionStatus,
    GridLevel,
    GridStrategy,
    LevelIntent,
    Order,
    OrderSide,
    OrderStatus,
    PositionSide,
    ProfitSnapshot,
)
from gridengine.core.utils import floor_to_step, now_ms, price_key, round_to_tick, tick_to_decimals

__all__ = [
    "EventBus",
    "StrategyEvent",
    "StrategyEventType",
    "Subscription",
    "AccountCredential",
    "AccountSnapshot",
    "ExchangeOrder",
    "ExecutionStatus",
    "GridLevel",
    "GridStrategy",
    "LevelIntent",
    "Order",
    "OrderSide",
    "OrderStatus",
    "PositionSide",
    "ProfitSnapshot",
    "floor_to_step",
    "now_ms",
    "price_key",
    "round_to_tick",
    "tick_to_decimals",
]
