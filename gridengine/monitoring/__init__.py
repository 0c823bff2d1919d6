"""
Monitoring and observability package.

Prometheus metrics and webhook alerting.
"""

from gridengine.monitoring.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    alert_from_event,
)
from gridengine.monitoring.metrics_rich import RichMetrics

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "alert_from_event",
    "RichMetrics",
]
