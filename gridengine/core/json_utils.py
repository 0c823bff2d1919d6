"""
Fast JSON utilities for log payloads and persisted strategy documents.

Usage:
    from gridengine.core.json_utils import dumps, loads

    log.info(dumps({"event": "order_placed", "px": 95000.0}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj, default=str).decode("utf-8")


def dumps_pretty(obj: Any) -> bytes:
    """Indented encode used for on-disk state files."""
    return orjson.dumps(obj, default=str, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
