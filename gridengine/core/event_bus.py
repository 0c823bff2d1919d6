"""
Event Bus: typed strategy events for logging, alerting and UI consumers.

Runners publish fire-and-forget; the bus drains its queue in a background
task and fans each event out to subscribers. A failing subscriber is counted
and logged but never stops delivery to the others, and never reaches the
publishing Runner.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from gridengine.core.json_utils import dumps

log = logging.getLogger("gridengine")


class StrategyEventType(str, Enum):
    """The closed set of event kinds a strategy emits."""
    INIT = "init"          # Runner initialization progress or failure
    ORDER = "order"        # Order placed, cancelled or filled
    ACCOUNT = "account"    # Balance / position snapshot or profit update
    EXCHANGE = "exchange"  # Exchange-side notices (leverage set, rejects)
    GRID = "grid"          # Plan / reconcile summary, status transitions
    ERROR = "error"        # Fault detected; emitted once per detection


@dataclass
class StrategyEvent:
    type: StrategyEventType
    strategy_id: Optional[int]
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "strategy_id": self.strategy_id,
            "timestamp_ms": self.timestamp_ms,
            "payload": self.payload,
        }

    def __str__(self) -> str:
        return f"StrategyEvent({self.type.value}, strategy={self.strategy_id}, ts={self.timestamp_ms})"


Handler = Callable[[StrategyEvent], Any]


@dataclass
class Subscription:
    handler: Handler
    priority: int = 0  # Higher = called first
    filter_fn: Optional[Callable[[StrategyEvent], bool]] = None
    name: Optional[str] = None


class EventBus:
    """
    Queue-backed pub/sub for StrategyEvents.

    Usage:
        bus = EventBus()
        bus.subscribe(StrategyEventType.ERROR, on_error)
        task = asyncio.create_task(bus.start())
        bus.emit(StrategyEventType.ORDER, strategy_id=7, action="place", px=95000.0)
        ...
        bus.stop()
        await task
    """

    DEFAULT_HISTORY_SIZE = 1000

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        queue_size: int = 0,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._log = log_event or self._default_log
        self._subscribers: Dict[StrategyEventType, List[Subscription]] = {}
        self._global_subscribers: List[Subscription] = []
        self._queue: asyncio.Queue[StrategyEvent] = asyncio.Queue(maxsize=max(queue_size, 0))
        self._running = False
        self._history: Deque[StrategyEvent] = deque(maxlen=history_size if history_size > 0 else None)
        self._history_enabled = history_size > 0
        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "handler_errors": 0,
            "queue_high_water": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Subscription Management
    # -------------------------------------------------------------------------

    @staticmethod
    def _insert(subs: List[Subscription], sub: Subscription) -> None:
        idx = len(subs)
        for i, existing in enumerate(subs):
            if existing.priority < sub.priority:
                idx = i
                break
        subs.insert(idx, sub)

    def subscribe(
        self,
        event_type: StrategyEventType,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[StrategyEvent], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        self._insert(self._subscribers.setdefault(event_type, []), sub)
        self._log(
            "event_bus_subscribe",
            event_type=event_type.value,
            handler_name=name or getattr(handler, "__name__", "handler"),
            priority=priority,
        )
        return sub

    def subscribe_all(
        self,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[StrategyEvent], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """Global subscribers see every event, before type-specific ones."""
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        self._insert(self._global_subscribers, sub)
        return sub

    def unsubscribe(self, event_type: Optional[StrategyEventType], subscription: Subscription) -> bool:
        subs = self._global_subscribers if event_type is None else self._subscribers.get(event_type, [])
        if subscription in subs:
            subs.remove(subscription)
            return True
        return False

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish_nowait(self, event: StrategyEvent) -> bool:
        """Queue an event without awaiting. Returns False when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            self._log("event_bus_queue_full", event_type=event.type.value, strategy_id=event.strategy_id)
            return False
        self._stats["events_published"] += 1
        qsize = self._queue.qsize()
        if qsize > self._stats["queue_high_water"]:
            self._stats["queue_high_water"] = qsize
        return True

    async def publish(self, event: StrategyEvent) -> bool:
        return self.publish_nowait(event)

    def emit(self, event_type: StrategyEventType, strategy_id: Optional[int] = None, **payload: Any) -> bool:
        """Build and queue an event in one call."""
        return self.publish_nowait(StrategyEvent(type=event_type, strategy_id=strategy_id, payload=payload))

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Process events until stop() is called. Run as a background task."""
        self._running = True
        self._log("event_bus_started")
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            await self._process_event(event)
        await self.drain()
        self._log("event_bus_stopped")

    def stop(self) -> None:
        self._running = False

    async def drain(self) -> int:
        """Deliver everything currently queued. Returns the number delivered."""
        count = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._process_event(event)
            count += 1
        return count

    async def _process_event(self, event: StrategyEvent) -> None:
        if self._history_enabled:
            self._history.append(event)

        handlers = [*self._global_subscribers, *self._subscribers.get(event.type, [])]
        for sub in handlers:
            if sub.filter_fn and not sub.filter_fn(event):
                continue
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._stats["handler_errors"] += 1
                self._log(
                    "event_bus_handler_error",
                    event_type=event.type.value,
                    handler_name=sub.name or "unknown",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        self._stats["events_processed"] += 1

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    def get_history(
        self,
        event_type: Optional[StrategyEventType] = None,
        strategy_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[StrategyEvent]:
        events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if strategy_id is not None:
            events = [e for e in events if e.strategy_id == strategy_id]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "subscriber_count": sum(len(s) for s in self._subscribers.values()),
            "global_subscriber_count": len(self._global_subscribers),
            "running": self._running,
        }
