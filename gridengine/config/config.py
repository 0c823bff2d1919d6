"""
Environment-driven process settings with validation.

Strategy definitions live elsewhere (strategy_config.py); this covers the
knobs shared by every Runner in the process.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from gridengine.core.json_utils import dumps

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    base_url: str
    ws_url: str
    api_key: str | None
    api_secret: str | None
    loop_interval: float
    http_timeout: float
    state_dir: str
    strategies_file: str
    rate_limit_per_sec: float
    rate_limit_burst: float
    pending_ttl_sec: float
    price_ttl_ms: int
    error_threshold: int
    error_cooldown_sec: float
    metrics_port: int
    alert_webhook_url: str | None
    alert_webhook_type: str  # generic, slack, discord
    alert_enabled: bool
    log_level: str
    log_file: str | None

    def dump(self) -> dict:
        """Settings for startup logging, secrets masked."""
        data = self.__dict__.copy()
        if data.get("api_secret"):
            data["api_secret"] = "****"
        return data

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            base_url=os.getenv("GRID_BASE_URL", "https://fapi.binance.com"),
            ws_url=os.getenv("GRID_WS_URL", "wss://fstream.binance.com/ws"),
            api_key=os.getenv("BINANCE_API_KEY"),
            api_secret=os.getenv("BINANCE_API_SECRET"),
            loop_interval=_float_env("GRID_LOOP_INTERVAL_SEC", 5.0),
            http_timeout=_float_env("GRID_HTTP_TIMEOUT", 10.0),
            state_dir=os.getenv("GRID_STATE_DIR", "state"),
            strategies_file=os.getenv("GRID_STRATEGIES_FILE", "configs/strategies.yaml"),
            rate_limit_per_sec=_float_env("GRID_RATE_LIMIT_PER_SEC", 10.0),
            rate_limit_burst=_float_env("GRID_RATE_LIMIT_BURST", 20.0),
            pending_ttl_sec=_float_env("GRID_PENDING_TTL_SEC", 30.0),
            price_ttl_ms=_int_env("GRID_PRICE_TTL_MS", 5000),
            error_threshold=_int_env("GRID_ERROR_THRESHOLD", 3),
            error_cooldown_sec=_float_env("GRID_ERROR_COOLDOWN_SEC", 5.0),
            metrics_port=_int_env("GRID_METRICS_PORT", 0),
            alert_webhook_url=os.getenv("GRID_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("GRID_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("GRID_ALERT_ENABLED", True),
            log_level=os.getenv("GRID_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("GRID_LOG_FILE") or None,
        )
        cfg._validate()
        _log_loaded(cfg)
        return cfg

    def _validate(self) -> None:
        if self.loop_interval <= 0:
            raise ValueError("GRID_LOOP_INTERVAL_SEC must be > 0")
        if self.http_timeout <= 0:
            raise ValueError("GRID_HTTP_TIMEOUT must be > 0")
        if self.rate_limit_per_sec <= 0 or self.rate_limit_burst < 1:
            raise ValueError("GRID_RATE_LIMIT_PER_SEC must be > 0 and GRID_RATE_LIMIT_BURST >= 1")
        if self.pending_ttl_sec <= 0:
            raise ValueError("GRID_PENDING_TTL_SEC must be > 0")
        if self.price_ttl_ms <= 0:
            raise ValueError("GRID_PRICE_TTL_MS must be > 0")
        if self.error_threshold < 1:
            raise ValueError("GRID_ERROR_THRESHOLD must be >= 1")
        if self.metrics_port < 0:
            raise ValueError("GRID_METRICS_PORT must be >= 0")
        if self.alert_webhook_type not in {"generic", "slack", "discord"}:
            raise ValueError("GRID_ALERT_WEBHOOK_TYPE must be one of generic, slack, discord")
        if self.log_level not in logging.getLevelNamesMapping():
            raise ValueError(f"GRID_LOG_LEVEL={self.log_level} is not a logging level")
        if self.pending_ttl_sec < self.loop_interval:
            logging.getLogger("gridengine").warning(
                "GRID_PENDING_TTL_SEC is shorter than one cycle; "
                "in-flight orders may be re-placed before the exchange reports them."
            )


def _log_loaded(cfg: Settings) -> None:
    logging.getLogger("gridengine").info(dumps({
        "event": "config_loaded",
        "base_url": cfg.base_url,
        "loop_interval": cfg.loop_interval,
        "state_dir": cfg.state_dir,
        "strategies_file": cfg.strategies_file,
        "rate_limit_per_sec": cfg.rate_limit_per_sec,
    }))
