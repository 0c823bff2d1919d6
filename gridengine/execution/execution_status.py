"""
Execution status machine - per-strategy operational health.

The status is recomputed from scratch every cycle by evaluate(); the machine
only validates the move against VALID_TRANSITIONS, keeps an audit trail, and
reports whether anything changed so the Runner can persist and emit once per
detection instead of once per retry.

State Diagram (simplified):

    INITIALIZING ──> TRADING <──> PAUSED_MANUAL
         │             │  ^
         │             v  │
         │   PRICE_ABOVE_MAX / PRICE_BELOW_MIN
         │   PRICE_ABOVE_OPEN / PRICE_BELOW_OPEN
         │             │
         │             v
         │   API_KEY_INVALID / NETWORK_ERROR / INSUFFICIENT_BALANCE / OTHER_ERROR
         v
    INIT_FAILED (terminal)
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Optional

from gridengine.core.json_utils import dumps
from gridengine.core.models import ExecutionStatus
from gridengine.exchange.errors import ExchangeErrorKind

log = logging.getLogger("gridengine")

S = ExecutionStatus


class TradingMode(Enum):
    """What the Runner may submit while in a given status."""
    FULL = auto()        # open and close levels
    CLOSE_ONLY = auto()  # only levels that reduce the position
    NONE = auto()        # observe only


TRADING_MODES: Dict[ExecutionStatus, TradingMode] = {
    S.INITIALIZING: TradingMode.NONE,
    S.TRADING: TradingMode.FULL,
    S.PAUSED_MANUAL: TradingMode.NONE,
    S.PRICE_ABOVE_MAX: TradingMode.CLOSE_ONLY,
    S.PRICE_BELOW_MIN: TradingMode.CLOSE_ONLY,
    S.PRICE_ABOVE_OPEN: TradingMode.CLOSE_ONLY,
    S.PRICE_BELOW_OPEN: TradingMode.CLOSE_ONLY,
    S.API_KEY_INVALID: TradingMode.NONE,
    S.NETWORK_ERROR: TradingMode.NONE,
    S.INSUFFICIENT_BALANCE: TradingMode.CLOSE_ONLY,
    S.OTHER_ERROR: TradingMode.NONE,
    S.INIT_FAILED: TradingMode.NONE,
}

_unmapped = set(ExecutionStatus) - set(TRADING_MODES)
if _unmapped:
    raise RuntimeError(f"execution statuses without a trading mode: {sorted(s.value for s in _unmapped)}")

FAULT_STATES: FrozenSet[ExecutionStatus] = frozenset({
    S.API_KEY_INVALID, S.NETWORK_ERROR, S.INSUFFICIENT_BALANCE, S.OTHER_ERROR, S.INIT_FAILED,
})

_ALL: FrozenSet[ExecutionStatus] = frozenset(ExecutionStatus)
_RUNNING: FrozenSet[ExecutionStatus] = _ALL - {S.INITIALIZING, S.INIT_FAILED}

# Faults raised while initialization is still pending may fall back to
# INITIALIZING or end in INIT_FAILED; everything past init stays in _RUNNING.
VALID_TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    S.INITIALIZING: _ALL - {S.INITIALIZING},
    S.TRADING: _RUNNING - {S.TRADING},
    S.PAUSED_MANUAL: _RUNNING - {S.PAUSED_MANUAL},
    S.PRICE_ABOVE_MAX: _RUNNING - {S.PRICE_ABOVE_MAX},
    S.PRICE_BELOW_MIN: _RUNNING - {S.PRICE_BELOW_MIN},
    S.PRICE_ABOVE_OPEN: _RUNNING - {S.PRICE_ABOVE_OPEN},
    S.PRICE_BELOW_OPEN: _RUNNING - {S.PRICE_BELOW_OPEN},
    S.INSUFFICIENT_BALANCE: _RUNNING - {S.INSUFFICIENT_BALANCE},
    S.API_KEY_INVALID: _ALL - {S.API_KEY_INVALID},
    S.NETWORK_ERROR: _ALL - {S.NETWORK_ERROR},
    S.OTHER_ERROR: _ALL - {S.OTHER_ERROR},
    S.INIT_FAILED: frozenset(),
}


def trading_mode(status: ExecutionStatus) -> TradingMode:
    return TRADING_MODES[status]


@dataclass
class CycleSignals:
    """Everything one cycle observed that can influence the status."""
    price: Optional[float]
    price_min: float
    price_max: float
    paused: bool = False
    resume_pending: bool = False
    initialized: bool = True
    init_failed: bool = False
    error_kind: Optional[ExchangeErrorKind] = None
    unclassified_error: bool = False
    insufficient_balance: bool = False
    position_amount: float = 0.0
    entry_price: float = 0.0
    above_open_enabled: bool = False
    below_open_enabled: bool = False


def evaluate(s: CycleSignals) -> ExecutionStatus:
    """
    Recompute the status from this cycle's signals.

    Priority (first match wins): terminal init failure, credential,
    connectivity (rate limits included), exchange reject or unclassified
    fault, pending init, manual pause, price band, balance, open-price
    sub-states, trading.

    An EXCHANGE_REJECT only reaches here from read paths after init; order
    rejects are absorbed by the Runner and init rejects set init_failed.
    """
    if s.init_failed:
        return S.INIT_FAILED
    if s.error_kind == ExchangeErrorKind.AUTH:
        return S.API_KEY_INVALID
    if s.error_kind in (ExchangeErrorKind.NETWORK, ExchangeErrorKind.RATE_LIMIT):
        return S.NETWORK_ERROR
    if s.error_kind == ExchangeErrorKind.EXCHANGE_REJECT:
        return S.OTHER_ERROR
    if s.unclassified_error:
        return S.OTHER_ERROR
    if not s.initialized:
        return S.INITIALIZING
    if s.paused or s.resume_pending:
        return S.PAUSED_MANUAL
    if s.price is not None:
        if s.price > s.price_max:
            return S.PRICE_ABOVE_MAX
        if s.price < s.price_min:
            return S.PRICE_BELOW_MIN
    if s.insufficient_balance:
        return S.INSUFFICIENT_BALANCE
    if s.price is not None and s.position_amount > 0 and s.entry_price > 0:
        if s.above_open_enabled and s.price >= s.entry_price:
            return S.PRICE_ABOVE_OPEN
        if s.below_open_enabled and s.price <= s.entry_price:
            return S.PRICE_BELOW_OPEN
    return S.TRADING


@dataclass
class StatusTransition:
    from_status: ExecutionStatus
    to_status: ExecutionStatus
    timestamp_ms: int
    reason: Optional[str] = None
    forced: bool = False


@dataclass
class _Stats:
    transitions: int = 0
    invalid_transitions: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)


class ExecutionStatusMachine:
    """
    Holds one strategy's execution_status and validates every change.

    An invalid move is logged, counted and forced to OTHER_ERROR rather than
    silently accepted. INIT_FAILED is terminal: nothing leaves it.
    """

    def __init__(
        self,
        status: ExecutionStatus = S.INITIALIZING,
        log_event: Optional[Callable[..., None]] = None,
        history_size: int = 100,
    ) -> None:
        self._status = status
        self._log_event = log_event or self._default_log
        self._history: Deque[StatusTransition] = deque(maxlen=history_size)
        self._stats = _Stats()

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @property
    def status(self) -> ExecutionStatus:
        return self._status

    @property
    def mode(self) -> TradingMode:
        return trading_mode(self._status)

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self._status]

    def can_transition(self, to_status: ExecutionStatus) -> bool:
        return to_status in VALID_TRANSITIONS[self._status]

    def apply(self, to_status: ExecutionStatus, reason: Optional[str] = None) -> Optional[StatusTransition]:
        """
        Move to to_status. Returns the transition, or None when nothing changed.

        Raises:
            ValueError: to_status is not an ExecutionStatus member.
        """
        if not isinstance(to_status, ExecutionStatus):
            raise ValueError(f"unknown execution status: {to_status!r}")
        if to_status == self._status or self.is_terminal:
            return None

        forced = False
        if not self.can_transition(to_status):
            self._stats.invalid_transitions += 1
            self._log_event(
                "execution_status_invalid_transition",
                from_status=self._status.value,
                to_status=to_status.value,
                reason=reason,
            )
            forced = True
            reason = f"invalid transition to {to_status.value}"
            to_status = S.OTHER_ERROR
            if to_status == self._status:
                return None

        transition = StatusTransition(
            from_status=self._status,
            to_status=to_status,
            timestamp_ms=int(time.time() * 1000),
            reason=reason,
            forced=forced,
        )
        self._status = to_status
        self._history.append(transition)
        self._stats.transitions += 1
        self._stats.by_status[to_status.value] = self._stats.by_status.get(to_status.value, 0) + 1
        return transition

    def update(self, signals: CycleSignals, reason: Optional[str] = None) -> Optional[StatusTransition]:
        return self.apply(evaluate(signals), reason=reason)

    def get_history(self, limit: int = 50) -> List[StatusTransition]:
        return list(self._history)[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "status": self._status.value,
            "transitions": self._stats.transitions,
            "invalid_transitions": self._stats.invalid_transitions,
            "by_status": dict(self._stats.by_status),
        }
