"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from gridengine.config.config import Settings
from gridengine.config.strategy_config import load_strategies
from gridengine.config.validator import ConfigurationError
from gridengine.core.event_bus import EventBus
from gridengine.exchange.binance_client import BinanceClientPool
from gridengine.exchange.rate_limit import CredentialRateLimiter
from gridengine.execution.circuit_breaker import CircuitBreakerConfig
from gridengine.execution.order_reconciler import OrderReconciler
from gridengine.infra.logging_cfg import attach_file_handler, build_logger, log_event
from gridengine.market_data import MarkPriceFeed
from gridengine.monitoring.alerting import AlertConfig, AlertManager, AlertSeverity
from gridengine.monitoring.metrics_rich import RichMetrics
from gridengine.orchestrator.strategy_runner import RunnerConfig
from gridengine.orchestrator.supervisor import StrategySupervisor
from gridengine.state.store import StrategyStore

log = logging.getLogger("gridengine")


async def seed_from_file(cfg: Settings, supervisor: StrategySupervisor) -> int:
    """Create strategies declared in the YAML file that are not already live."""
    created = 0
    for strategy in load_strategies(cfg):
        existing = supervisor.store.find_active(strategy.api_key, strategy.symbol, strategy.position_side.value)
        if existing is not None:
            log_event(log, "strategy_seed_skipped", strategy_id=existing.id, symbol=strategy.symbol)
            continue
        await supervisor.create(strategy)
        created += 1
    return created


async def main() -> None:
    cfg = Settings.load()
    level = logging.getLevelNamesMapping()[cfg.log_level]
    build_logger("gridengine", level=level)
    if cfg.log_file:
        attach_file_handler(log, cfg.log_file, level)

    alert_manager = AlertManager(AlertConfig(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        min_severity=AlertSeverity.WARNING,
        enabled=cfg.alert_enabled,
    ))

    metrics = RichMetrics()
    if cfg.metrics_port > 0:
        metrics.serve(cfg.metrics_port)
        log_event(log, "metrics_server_started", port=cfg.metrics_port)

    bus = EventBus()
    alert_manager.attach(bus)
    bus_task = asyncio.create_task(bus.start(), name="event-bus")

    store = StrategyStore(cfg.state_dir)
    pool = BinanceClientPool(
        base_url=cfg.base_url,
        timeout=cfg.http_timeout,
        limiter=CredentialRateLimiter(cfg.rate_limit_per_sec, cfg.rate_limit_burst),
    )
    feed = MarkPriceFeed(cfg.ws_url, ttl_ms=cfg.price_ttl_ms)
    supervisor = StrategySupervisor(
        store,
        pool,
        feed=feed,
        bus=bus,
        metrics=metrics,
        reconciler=OrderReconciler(pending_ttl_sec=cfg.pending_ttl_sec),
        runner_config=RunnerConfig(
            loop_interval_sec=cfg.loop_interval,
            breaker=CircuitBreakerConfig(
                error_threshold=cfg.error_threshold,
                cooldown_sec=cfg.error_cooldown_sec,
            ),
        ),
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        restored = await supervisor.restore()
        try:
            created = await seed_from_file(cfg, supervisor)
        except ConfigurationError as exc:
            log.error(f"Strategy file rejected: {exc}")
            created = 0
        log_event(log, "startup", restored=restored, created=created, running=len(supervisor))
        await alert_manager.alert_startup(len(supervisor))

        await stop_event.wait()
        log.info("Shutdown signal received, cleaning up...")
        await alert_manager.alert_shutdown("signal_received")
    finally:
        log.info("Stopping runners and closing connections...")
        await supervisor.shutdown()
        await feed.close()
        await pool.close()
        await alert_manager.flush()
        await alert_manager.close()
        bus.stop()
        await bus_task
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nEngine stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
