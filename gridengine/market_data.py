"""
Market data: one shared Binance mark-price stream per symbol.

Runners trading the same symbol subscribe to a single websocket. Ticks fan
out to every subscriber callback and land in a TTL cache that Runners read
at the start of each cycle. A missed tick just means the next read is a
little older; a stale cache makes the Runner fall back to REST.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import websockets

from gridengine.core.json_utils import dumps, loads
from gridengine.exchange.rate_limit import BackoffConfig

log = logging.getLogger("gridengine")

DEFAULT_WS_URL = "wss://fstream.binance.com/ws"

PriceCallback = Callable[[str, float], None]


class CachedPrice:
    """Last mark price with a TTL so stale values never drive a cycle."""
    __slots__ = ("_value", "_timestamp_ms", "_ttl_ms")

    def __init__(self, ttl_ms: int = 5000) -> None:
        self._value: float = 0.0
        self._timestamp_ms: int = 0
        self._ttl_ms: int = ttl_ms

    def get(self) -> Optional[float]:
        """Return cached value if within TTL, else None."""
        now_ms = int(time.time() * 1000)
        if self._value > 0 and (now_ms - self._timestamp_ms) < self._ttl_ms:
            return self._value
        return None

    def set(self, value: float) -> None:
        if value <= 0:
            return
        self._value = value
        self._timestamp_ms = int(time.time() * 1000)

    def get_unchecked(self) -> float:
        return self._value

    def age_ms(self) -> int:
        if self._timestamp_ms == 0:
            return 0
        return int(time.time() * 1000) - self._timestamp_ms


@dataclass
class _SymbolStream:
    symbol: str
    cache: CachedPrice
    callbacks: Dict[int, Optional[PriceCallback]] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None
    connected: bool = False
    reconnects: int = 0


@dataclass(frozen=True)
class FeedSubscription:
    symbol: str
    token: int


class MarkPriceFeed:
    """
    Reference-counted mark-price streams.

    Usage:
        feed = MarkPriceFeed()
        sub = feed.subscribe("BTCUSDT")
        px = feed.latest("BTCUSDT")   # None until the first fresh tick
        feed.unsubscribe(sub)
        await feed.close()
    """

    def __init__(
        self,
        ws_url: str = DEFAULT_WS_URL,
        ttl_ms: int = 5000,
        backoff: Optional[BackoffConfig] = None,
        connect: Optional[Callable[..., Any]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.ws_url = ws_url.rstrip("/")
        self.ttl_ms = ttl_ms
        self.backoff = backoff or BackoffConfig(base_delay_sec=1.0, max_delay_sec=30.0)
        self._connect = connect or websockets.connect
        self._streams: Dict[str, _SymbolStream] = {}
        self._tokens = itertools.count(1)
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def subscribe(self, symbol: str, callback: Optional[PriceCallback] = None) -> FeedSubscription:
        symbol = symbol.upper()
        stream = self._streams.get(symbol)
        if stream is None:
            stream = _SymbolStream(symbol=symbol, cache=CachedPrice(self.ttl_ms))
            self._streams[symbol] = stream
        token = next(self._tokens)
        stream.callbacks[token] = callback
        if stream.task is None or stream.task.done():
            stream.task = asyncio.create_task(self._run(stream), name=f"markprice-{symbol}")
        return FeedSubscription(symbol, token)

    def unsubscribe(self, sub: FeedSubscription) -> None:
        stream = self._streams.get(sub.symbol)
        if stream is None:
            return
        stream.callbacks.pop(sub.token, None)
        if not stream.callbacks:
            if stream.task and not stream.task.done():
                stream.task.cancel()
            del self._streams[sub.symbol]
            self._log("ws_stream_closed", symbol=sub.symbol)

    def subscriber_count(self, symbol: str) -> int:
        stream = self._streams.get(symbol.upper())
        return len(stream.callbacks) if stream else 0

    def latest(self, symbol: str) -> Optional[float]:
        stream = self._streams.get(symbol.upper())
        return stream.cache.get() if stream else None

    def publish(self, symbol: str, price: float) -> None:
        """Record a tick and fan it out. Also used to seed the cache from REST."""
        stream = self._streams.get(symbol.upper())
        if stream is None:
            return
        stream.cache.set(price)
        for cb in list(stream.callbacks.values()):
            if cb is None:
                continue
            try:
                cb(stream.symbol, price)
            except Exception as exc:
                self._log("ws_subscriber_error", symbol=stream.symbol, err=str(exc))

    async def _run(self, stream: _SymbolStream) -> None:
        url = f"{self.ws_url}/{stream.symbol.lower()}@markPrice@1s"
        attempt = 0
        while True:
            try:
                async with self._connect(url) as ws:
                    stream.connected = True
                    attempt = 0
                    self._log("ws_connected", symbol=stream.symbol)
                    async for message in ws:
                        self._handle_message(stream, message)
            except asyncio.CancelledError:
                stream.connected = False
                raise
            except Exception as exc:
                stream.reconnects += 1
                self._log("ws_reconnect", symbol=stream.symbol, err=str(exc), attempt=attempt)
            stream.connected = False
            await asyncio.sleep(self.backoff.delay(attempt))
            attempt += 1

    def _handle_message(self, stream: _SymbolStream, message: Any) -> None:
        try:
            data = loads(message)
        except ValueError:
            return
        if not isinstance(data, dict):
            return
        raw = data.get("p")
        if raw is None:
            return
        try:
            price = float(raw)
        except (TypeError, ValueError):
            return
        self.publish(stream.symbol, price)

    async def close(self) -> None:
        tasks = [s.task for s in self._streams.values() if s.task and not s.task.done()]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._streams.clear()
