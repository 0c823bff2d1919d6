"""Unit tests for rich metrics and structured logging."""

import logging

from gridengine.core.json_utils import loads
from gridengine.core.models import ExecutionStatus
from gridengine.infra.logging_cfg import JsonFormatter, ThrottledFilter, attach_file_handler, log_event
from gridengine.monitoring.metrics_rich import RichMetrics


def _record(msg: str) -> logging.LogRecord:
    return logging.LogRecord("gridengine", logging.INFO, __file__, 1, msg, None, None)


def test_rich_metrics_counters():
    """Counters are labelled per strategy."""
    metrics = RichMetrics()
    metrics.orders_placed.labels(strategy="1", side="BUY", intent="open").inc()
    metrics.orders_placed.labels(strategy="1", side="BUY", intent="open").inc()
    metrics.orders_placed.labels(strategy="2", side="SELL", intent="close").inc()

    registry = metrics.get_registry()
    assert registry.get_sample_value(
        "orders_placed_total", {"strategy": "1", "side": "BUY", "intent": "open"}
    ) == 2
    assert registry.get_sample_value(
        "orders_placed_total", {"strategy": "2", "side": "SELL", "intent": "close"}
    ) == 1


def test_rich_metrics_separate_registries():
    """Two instances never collide on metric names."""
    a, b = RichMetrics(), RichMetrics()
    a.position.labels(strategy="1").set(0.5)
    assert b.get_registry().get_sample_value("position", {"strategy": "1"}) is None


def test_set_status_is_one_hot():
    """Exactly one status series is 1 for a strategy."""
    metrics = RichMetrics()
    metrics.set_status("7", ExecutionStatus.TRADING)
    metrics.set_status("7", ExecutionStatus.NETWORK_ERROR)
    registry = metrics.get_registry()
    values = {
        s.value: registry.get_sample_value("execution_status", {"strategy": "7", "status": s.value})
        for s in ExecutionStatus
    }
    assert values["NETWORK_ERROR"] == 1
    assert sum(values.values()) == 1


def test_histograms_record():
    """Histograms count observations."""
    metrics = RichMetrics()
    metrics.order_latency_ms.labels(strategy="1").observe(42.5)
    metrics.order_latency_ms.labels(strategy="1").observe(105.2)
    assert metrics.get_registry().get_sample_value("order_latency_ms_count", {"strategy": "1"}) == 2


def test_json_formatter():
    """File records are one JSON object per line."""
    data = loads(JsonFormatter().format(_record('{"event": "x"}')))
    assert data["level"] == "INFO"
    assert data["name"] == "gridengine"
    assert data["msg"] == '{"event": "x"}'


def test_throttled_filter_suppresses_repeats():
    """Noisy events pass once per strategy per cooldown."""
    f = ThrottledFilter(cooldown_sec=60.0)
    retry_1 = '{"event": "cycle_retry", "strategy_id": 1}'
    retry_2 = '{"event": "cycle_retry", "strategy_id": 2}'
    assert f.filter(_record(retry_1)) is True
    assert f.filter(_record(retry_1)) is False
    assert f.filter(_record(retry_2)) is True
    assert f.filter(_record('{"event": "order_placed"}')) is True
    assert f.filter(_record("plain text")) is True


def test_log_event_and_file_handler(tmp_path):
    """log_event writes a JSON payload through the file handler."""
    logger = logging.getLogger("gridengine.test_file")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    path = tmp_path / "engine.log"
    handler = attach_file_handler(logger, str(path), async_file=False)
    try:
        log_event(logger, "order_placed", strategy_id=3, px=95000.0)
        handler.flush()
    finally:
        logger.removeHandler(handler)
        handler.close()
    line = path.read_text(encoding="utf-8").strip()
    payload = loads(loads(line)["msg"])
    assert payload == {"event": "order_placed", "strategy_id": 3, "px": 95000.0}
