"""
Grid strategy execution engine for Binance USDT-M futures.

Packages:
    config        process settings, strategy YAML, validation
    core          domain models, event bus, json and numeric helpers
    exchange      signed REST client, error taxonomy, rate limits, symbol filters
    strategy      grid planner
    execution     reconciler, execution status machine, circuit breaker, profit
    state         durable strategy and order records
    orchestrator  per-strategy Runner and the Supervisor that owns them
    monitoring    Prometheus metrics and webhook alerting
"""

__version__ = "0.1.0"
