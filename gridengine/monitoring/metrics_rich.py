"""
Rich Prometheus metrics for production observability.

Organized into: execution, fills, strategy, operational.
Every series is labelled by strategy id so several Runners share one registry.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, start_http_server
from typing import Optional

from gridengine.core.models import ExecutionStatus


class RichMetrics:
    """Comprehensive metrics for the grid engine."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Execution Metrics ===
        self.orders_placed = Counter(
            'orders_placed_total',
            'Limit orders accepted by the exchange',
            labelnames=['strategy', 'side', 'intent'],
            registry=reg
        )
        self.orders_rejected = Counter(
            'orders_rejected_total',
            'Orders rejected by exchange',
            labelnames=['strategy', 'reason'],
            registry=reg
        )
        self.orders_cancelled = Counter(
            'orders_cancelled_total',
            'Orders cancelled',
            labelnames=['strategy', 'reason'],
            registry=reg
        )
        self.order_latency_ms = Histogram(
            'order_latency_ms',
            'Time from submit to ACK (milliseconds)',
            labelnames=['strategy'],
            buckets=[5, 10, 20, 50, 100, 200, 500, 1000, 2000],
            registry=reg
        )

        # === Fill Metrics ===
        self.fills_total = Counter(
            'fills_total',
            'Fills detected',
            labelnames=['strategy', 'side'],
            registry=reg
        )
        self.position = Gauge(
            'position',
            'Position quantity on the strategy side',
            labelnames=['strategy'],
            registry=reg
        )
        self.realized_pnl = Gauge(
            'realized_pnl',
            'Realized PnL net of fees (USDT)',
            labelnames=['strategy'],
            registry=reg
        )
        self.funding_fee = Gauge(
            'funding_fee',
            'Accumulated funding income (USDT)',
            labelnames=['strategy'],
            registry=reg
        )

        # === Strategy Metrics ===
        self.mark_price = Gauge(
            'mark_price',
            'Last mark price used by a cycle',
            labelnames=['strategy'],
            registry=reg
        )
        self.target_levels = Gauge(
            'target_levels',
            'Levels in the current plan',
            labelnames=['strategy', 'intent'],
            registry=reg
        )
        self.execution_status = Gauge(
            'execution_status',
            'Execution status (1 for the current status, 0 otherwise)',
            labelnames=['strategy', 'status'],
            registry=reg
        )

        # === Operational Metrics ===
        self.cycles_total = Counter(
            'cycles_total',
            'Runner cycles executed',
            labelnames=['strategy'],
            registry=reg
        )
        self.cycle_errors_total = Counter(
            'cycle_errors_total',
            'Cycle errors by kind',
            labelnames=['strategy', 'kind'],
            registry=reg
        )
        self.cycle_duration_ms = Histogram(
            'cycle_duration_ms',
            'Cycle wall time (milliseconds)',
            labelnames=['strategy'],
            buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000],
            registry=reg
        )
        self.price_fallback_rest = Counter(
            'price_fallback_rest_total',
            'Cycles that fell back to the REST mark price',
            labelnames=['strategy'],
            registry=reg
        )
        self.duplicates_cancelled = Counter(
            'duplicates_cancelled_total',
            'Duplicate orders cancelled on one level',
            labelnames=['strategy'],
            registry=reg
        )

        # === Runner Lifecycle ===
        self.runners_started = Counter(
            'runners_started_total',
            'Runner tasks started',
            labelnames=['strategy'],
            registry=reg
        )
        self.runners_crashed = Counter(
            'runners_crashed_total',
            'Runner tasks that died unexpectedly',
            labelnames=['strategy'],
            registry=reg
        )
        self.active_runners = Gauge(
            'active_runners',
            'Runner tasks currently alive',
            registry=reg
        )

        self.registry = reg

    def set_status(self, strategy: str, status: ExecutionStatus) -> None:
        for s in ExecutionStatus:
            self.execution_status.labels(strategy=strategy, status=s.value).set(1 if s == status else 0)

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry

    def serve(self, port: int) -> None:
        """Expose the registry on /metrics."""
        start_http_server(port, registry=self.registry)
