"""
Strategy package.

The grid planner: pure computation of the target ladder.
"""

from gridengine.strategy.grid_planner import PlanContext, level_prices, plan, split_by_intent

__all__ = [
    "PlanContext",
    "level_prices",
    "plan",
    "split_by_intent",
]
