"""
CircuitBreaker: backoff for transient exchange failures (network, rate limit).

Handles:
- Error streak tracking
- Trip after N consecutive failures, with exponential cooldown on repeat trips
- Automatic reset once cooldown expires
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from gridengine.core.json_utils import dumps

log = logging.getLogger("gridengine")


@dataclass
class CircuitBreakerConfig:
    error_threshold: int = 3  # Consecutive transient errors to trip
    cooldown_sec: float = 5.0  # Base cooldown once tripped
    backoff_multiplier: float = 2.0  # Cooldown growth on repeated trips
    max_backoff: float = 32.0  # Cap on the multiplier


class CircuitBreaker:
    """
    Tracks one Runner's transient-error streak.

    While tripped, the Runner waits out cooldown_remaining before re-running
    the same cycle. Not locked; one Runner task owns each instance.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        on_trip: Optional[Callable[[], None]] = None,
        on_reset: Optional[Callable[[], None]] = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.error_streak: int = 0
        self._tripped: bool = False
        self._cooldown_until: float = 0.0
        self._trip_count: int = 0
        self._on_trip = on_trip
        self._on_reset = on_reset
        self._log_event = log_event or self._default_log
        self._clock = clock

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @property
    def is_tripped(self) -> bool:
        """Auto-resets after cooldown."""
        if self._tripped and self._clock() >= self._cooldown_until:
            self._reset()
            return False
        return self._tripped

    @property
    def cooldown_remaining(self) -> float:
        if not self._tripped:
            return 0.0
        return max(0.0, self._cooldown_until - self._clock())

    @property
    def trip_count(self) -> int:
        return self._trip_count

    def record_error(self, where: str, error: Exception) -> bool:
        """Returns True if this error tripped the circuit."""
        self.error_streak += 1
        self._log_event("transient_error", where=where, err=str(error), streak=self.error_streak)
        if self.error_streak >= self.config.error_threshold:
            return self._trip(where)
        return False

    def record_success(self) -> None:
        if self.error_streak > 0 or self._trip_count > 0:
            self._log_event("transient_error_reset", streak=self.error_streak, trip_count=self._trip_count)
        self.error_streak = 0
        if not self._tripped:
            self._trip_count = 0

    def _trip(self, where: str) -> bool:
        if self._tripped:
            return False
        self._tripped = True
        self._trip_count += 1
        backoff = min(
            self.config.backoff_multiplier ** min(self._trip_count - 1, 10),
            self.config.max_backoff,
        )
        cooldown = max(0.0, self.config.cooldown_sec) * backoff
        self._cooldown_until = self._clock() + cooldown
        self._log_event(
            "circuit_break",
            where=where,
            streak=self.error_streak,
            trip_count=self._trip_count,
            cooldown_sec=cooldown,
        )
        self._fire(self._on_trip, "on_trip")
        return True

    def _reset(self) -> None:
        was_tripped = self._tripped
        self._tripped = False
        self.error_streak = 0
        if was_tripped:
            self._log_event("circuit_reset", trip_count=self._trip_count)
            self._fire(self._on_reset, "on_reset")

    def _fire(self, cb: Optional[Callable[[], None]], name: str) -> None:
        if cb is None:
            return
        try:
            cb()
        except Exception as exc:
            log.warning(dumps({"event": "circuit_callback_error", "callback": name, "err": str(exc)}))

    def force_reset(self) -> None:
        self._cooldown_until = 0.0
        self._reset()

    def get_state(self) -> dict:
        return {
            "tripped": self._tripped,
            "error_streak": self.error_streak,
            "trip_count": self._trip_count,
            "cooldown_until": self._cooldown_until,
            "cooldown_remaining": self.cooldown_remaining,
        }
