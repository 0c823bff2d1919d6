"""Load strategy definitions from YAML.

File path via env `GRID_STRATEGIES_FILE`, default `configs/strategies.yaml`.

    credentials:
      main:
        api_key_env: MAIN_BINANCE_KEY
        api_secret_env: MAIN_BINANCE_SECRET
    strategies:
      - symbol: BTCUSDT
        position_side: LONG
        price_min: 90000
        price_max: 100000
        grid_step: 1000
        order_size: 0.001
        credential: main

An entry may also carry api_key/api_secret inline; with neither, the
process-wide BINANCE_API_KEY/BINANCE_API_SECRET pair is used.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from gridengine.config.config import Settings
from gridengine.config.validator import ConfigurationError, ValidationIssue, validate_or_raise
from gridengine.core.json_utils import dumps
from gridengine.core.models import AccountCredential, GridStrategy, PositionSide

log = logging.getLogger("gridengine")

_FLOAT_FIELDS = (
    "price_min",
    "price_max",
    "order_size",
    "grid_step",
    "max_position_quantity",
    "min_position_quantity",
    "open_quantity",
    "close_quantity",
    "polling_interval_sec",
)


def load_strategy_file(path: str | None = None) -> Dict[str, Any]:
    """Raw YAML document; a missing file is an empty configuration."""
    if path is None:
        path = os.getenv("GRID_STRATEGIES_FILE", "configs/strategies.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        log.error(dumps({"event": "strategies_file_invalid", "path": str(p), "err": str(exc)}))
        raise ConfigurationError([ValidationIssue("strategies_file", f"unparseable YAML: {exc}", value=str(p))])
    return data if isinstance(data, dict) else {}


def resolve_credential(
    entry: Mapping[str, Any],
    settings: Settings,
    credentials: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> Optional[AccountCredential]:
    """Inline key pair, then a named credential block, then the process default."""
    if entry.get("api_key") and entry.get("api_secret"):
        return AccountCredential(str(entry["api_key"]), str(entry["api_secret"]))

    name = entry.get("credential")
    if name:
        block = (credentials or {}).get(name)
        if block is None:
            raise ConfigurationError([ValidationIssue("credential", f"unknown credential '{name}'", value=name)])
        key = block.get("api_key") or os.getenv(str(block.get("api_key_env", "")), "")
        secret = block.get("api_secret") or os.getenv(str(block.get("api_secret_env", "")), "")
        if key and secret:
            return AccountCredential(str(key), str(secret))
        return None

    if settings.api_key and settings.api_secret:
        return AccountCredential(settings.api_key, settings.api_secret)
    return None


def build_strategy(
    entry: Mapping[str, Any],
    settings: Settings,
    credentials: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> GridStrategy:
    """Validate one entry and turn it into an unsaved GridStrategy."""
    raw: Dict[str, Any] = dict(entry)
    cred = resolve_credential(entry, settings, credentials)
    raw["api_key"] = cred.api_key if cred else None
    raw["api_secret"] = cred.api_secret if cred else None
    if raw.get("symbol"):
        raw["symbol"] = str(raw["symbol"]).upper()
    validate_or_raise(raw)

    kwargs: Dict[str, Any] = {
        "symbol": raw["symbol"],
        "position_side": PositionSide(str(raw["position_side"]).upper()),
        "api_key": raw["api_key"],
        "api_secret": raw["api_secret"],
        "remark": str(raw.get("remark", "")),
        "paused": bool(raw.get("paused", False)),
        "is_above_open_price": bool(raw.get("is_above_open_price", False)),
        "is_below_open_price": bool(raw.get("is_below_open_price", False)),
        "priority_close_on_trend": bool(raw.get("priority_close_on_trend", False)),
    }
    for name in _FLOAT_FIELDS:
        if raw.get(name) is not None:
            kwargs[name] = float(raw[name])
    if raw.get("grid_count") is not None:
        kwargs["grid_count"] = int(raw["grid_count"])
    if raw.get("leverage") is not None:
        kwargs["leverage"] = int(raw["leverage"])
    return GridStrategy(**kwargs)


def load_strategies(settings: Settings, path: str | None = None) -> List[GridStrategy]:
    """Every strategy declared in the YAML file, validated. Any invalid entry aborts the load."""
    doc = load_strategy_file(path or settings.strategies_file)
    credentials = doc.get("credentials") or {}
    entries = doc.get("strategies") or []
    if not isinstance(entries, list):
        raise ConfigurationError([ValidationIssue("strategies", "must be a list of strategy entries")])
    return [build_strategy(e, settings, credentials) for e in entries if isinstance(e, dict)]
