"""
Structured logging setup for the grid engine.

- Rich console handler for humans
- JSON file handler behind a non-blocking queue so the event loop never waits on disk
- Throttling for repetitive warnings (retries, stale feeds)
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler

from gridengine.core.json_utils import dumps, loads

LOGGER_NAME = "gridengine"

CRITICAL = logging.CRITICAL
ERROR = logging.ERROR
WARNING = logging.WARNING
INFO = logging.INFO
DEBUG = logging.DEBUG


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return dumps(payload)


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues log records for a background writer thread.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="log-writer")
        self._thread.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.emit(record)
            except Exception:
                self._target.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets the first occurrence of a noisy event through, then suppresses
    repeats for the same strategy until the cooldown expires.
    """

    DEFAULT_EVENTS = frozenset({
        "cycle_retry", "cycle_fault", "http_retry", "ws_reconnect", "price_fallback_rest",
    })

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = throttled_events or set(self.DEFAULT_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        try:
            data = loads(msg)
        except ValueError:
            return True
        if not isinstance(data, dict):
            return True
        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('strategy_id', '')}:{data.get('symbol', '')}"
        if now - self._last_seen.get(key, 0.0) < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = LOGGER_NAME,
    level: int = logging.INFO,
    file_path: Optional[str] = None,
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the process logger.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: Path to a JSON log file (None disables file logging)
        async_file: Write the file through a background queue
        throttle_warnings: Suppress repeated noisy events on the console

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    stream_handler = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    if throttle_warnings:
        stream_handler.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(stream_handler)

    if file_path:
        attach_file_handler(logger, file_path, level, async_file)

    logger.propagate = False
    return logger


def attach_file_handler(
    logger: logging.Logger,
    file_path: str,
    level: int = logging.INFO,
    async_file: bool = True,
) -> logging.Handler:
    """Add JSON file output to an existing logger."""
    file_handler = logging.FileHandler(file_path)
    file_handler.setFormatter(JsonFormatter())
    file_handler.setLevel(level)
    if not async_file:
        logger.addHandler(file_handler)
        return file_handler
    async_handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
    async_handler.setLevel(level)
    logger.addHandler(async_handler)
    return async_handler


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data,
) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "order_placed", strategy_id=3, side="BUY", px=95000.0)
    """
    logger.log(level, dumps({"event": event, **data}))
