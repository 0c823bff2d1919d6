"""
State package - durable strategy and order records.
"""

from gridengine.state.store import StrategyNotFoundError, StrategyStore

__all__ = [
    "StrategyNotFoundError",
    "StrategyStore",
]
