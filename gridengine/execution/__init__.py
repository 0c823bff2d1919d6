"""
Execution package.

Reconciliation of plan against book, the execution status machine, transient
error backoff, and profit accounting.
"""

from gridengine.execution.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from gridengine.execution.execution_status import (
    CycleSignals,
    ExecutionStatusMachine,
    TradingMode,
    VALID_TRANSITIONS,
    evaluate,
    trading_mode,
)
from gridengine.execution.order_reconciler import (
    CancelAction,
    OrderReconciler,
    PlaceAction,
    ReconcileResult,
    diff_levels,
)
from gridengine.execution.profit import compute_profit

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CycleSignals",
    "ExecutionStatusMachine",
    "TradingMode",
    "VALID_TRANSITIONS",
    "evaluate",
    "trading_mode",
    "CancelAction",
    "OrderReconciler",
    "PlaceAction",
    "ReconcileResult",
    "diff_levels",
    "compute_profit",
]
