"""
Webhook alerting for strategy faults.

- Send alerts to webhooks (Slack, Discord, generic HTTP)
- Rate limiting per alert type and strategy to prevent alert storms
- Alert batching for related events
- Async non-blocking delivery, driven by the EventBus
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple

import httpx

from gridengine.core.event_bus import EventBus, StrategyEvent, StrategyEventType

logger = logging.getLogger("gridengine")


class AlertSeverity(Enum):
    """Alert severity levels."""
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class AlertType(Enum):
    """Types of alerts."""
    INIT_FAILED = auto()
    API_KEY_INVALID = auto()
    NETWORK_ERROR = auto()
    INSUFFICIENT_BALANCE = auto()
    STRATEGY_ERROR = auto()
    RUNNER_CRASHED = auto()
    STARTUP = auto()
    SHUTDOWN = auto()
    CUSTOM = auto()


# Fault status carried in an error event -> (alert type, severity)
_STATUS_ALERTS: Dict[str, Tuple[AlertType, AlertSeverity]] = {
    "INIT_FAILED": (AlertType.INIT_FAILED, AlertSeverity.CRITICAL),
    "API_KEY_INVALID": (AlertType.API_KEY_INVALID, AlertSeverity.CRITICAL),
    "NETWORK_ERROR": (AlertType.NETWORK_ERROR, AlertSeverity.WARNING),
    "INSUFFICIENT_BALANCE": (AlertType.INSUFFICIENT_BALANCE, AlertSeverity.WARNING),
    "OTHER_ERROR": (AlertType.STRATEGY_ERROR, AlertSeverity.CRITICAL),
}


@dataclass
class Alert:
    """An alert to be sent."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    symbol: Optional[str] = None
    strategy_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "symbol": self.symbol,
            "strategy_id": self.strategy_id,
        }


@dataclass
class AlertConfig:
    """Configuration for alerting."""
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60  # Min seconds between same alert type per strategy
    batch_window_ms: int = 5000  # Batch alerts within this window
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "GridEngine"
    timeout_sec: float = 10.0


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def _label(alert: Alert) -> Optional[str]:
        if alert.symbol and alert.strategy_id is not None:
            return f"{alert.symbol} #{alert.strategy_id}"
        return alert.symbol

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: "#FF0000",
            AlertSeverity.WARNING: "#FFA500",
            AlertSeverity.INFO: "#0000FF",
        }.get(alert.severity, "#808080")

        fields = []
        label = WebhookFormatter._label(alert)
        if label:
            fields.append({"title": "Strategy", "value": label, "short": True})
        fields.append({"title": "Type", "value": alert.alert_type.name, "short": True})

        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:5]:
                fields.append({"title": key, "value": str(value), "short": True})

        return {
            "username": config.bot_name,
            "icon_emoji": ":robot_face:",
            "attachments": [{
                "color": color,
                "title": alert.title,
                "text": alert.message,
                "fields": fields,
                "footer": f"{config.bot_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }]
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: 0xFF0000,
            AlertSeverity.WARNING: 0xFFA500,
            AlertSeverity.INFO: 0x0000FF,
        }.get(alert.severity, 0x808080)

        fields = []
        label = WebhookFormatter._label(alert)
        if label:
            fields.append({"name": "Strategy", "value": label, "inline": True})
        fields.append({"name": "Type", "value": alert.alert_type.name, "inline": True})

        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:5]:
                fields.append({"name": key, "value": str(value), "inline": True})

        return {
            "username": config.bot_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": color,
                "fields": fields,
                "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }]
        }


class AlertManager:
    """
    Manages alert delivery with rate limiting and batching.

    Usage:
        alerts = AlertManager(AlertConfig(webhook_url=url, webhook_type="slack"))
        alerts.attach(bus)          # error and init events become alerts
        ...
        await alerts.close()
    """

    def __init__(self, config: Optional[AlertConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or AlertConfig()
        self._last_alert_times: Dict[Tuple[AlertType, Optional[int]], int] = {}
        self._pending_alerts: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._client = client
        self._owns_client = client is None
        self.delivered = 0
        self.failed = 0

    async def send_alert(self, alert: Alert) -> bool:
        """
        Queue an alert for delivery.

        Returns:
            True if alert was queued, False if rate limited or disabled
        """
        if not self.config.enabled:
            return False

        if not self.config.webhook_url:
            logger.debug(f"Alert not sent (no webhook): {alert.title}")
            return False

        if alert.severity.value > self.config.min_severity.value:
            return False

        now_ms = int(time.time() * 1000)
        key = (alert.alert_type, alert.strategy_id)
        last_time = self._last_alert_times.get(key, 0)
        if now_ms - last_time < self.config.rate_limit_seconds * 1000:
            logger.debug(f"Alert rate limited: {alert.alert_type.name} strategy={alert.strategy_id}")
            return False

        async with self._lock:
            self._pending_alerts.append(alert)
            self._last_alert_times[key] = now_ms

            if self._batch_task is None or self._batch_task.done():
                self._batch_task = asyncio.create_task(self._batch_deliver())

        return True

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)

        async with self._lock:
            alerts = self._pending_alerts.copy()
            self._pending_alerts.clear()

        if not alerts:
            return

        if len(alerts) == 1:
            await self._deliver_single(alerts[0])
        else:
            await self._deliver_batch(alerts)

    async def _deliver_single(self, alert: Alert) -> bool:
        return await self._http_post(self._format_alert(alert))

    async def _deliver_batch(self, alerts: List[Alert]) -> bool:
        if self.config.webhook_type == "slack":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["attachments"].extend(self._format_alert(alert)["attachments"])
        elif self.config.webhook_type == "discord":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["embeds"].extend(self._format_alert(alert)["embeds"])
        else:
            payload = {"alerts": [alert.to_dict() for alert in alerts]}

        return await self._http_post(payload)

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_sec)
        return self._client

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        """POST to the webhook. Failures are logged, never raised."""
        if not self.config.webhook_url:
            return False

        client = self._http()
        for attempt in range(retries + 1):
            try:
                resp = await client.post(self.config.webhook_url, json=payload)
                if resp.status_code < 300:
                    self.delivered += 1
                    logger.debug("Alert delivered successfully")
                    return True
                logger.warning(f"Alert delivery failed: HTTP {resp.status_code}")
            except httpx.TimeoutException:
                logger.warning(f"Alert delivery timeout (attempt {attempt + 1})")
            except httpx.HTTPError as e:
                logger.warning(f"Alert delivery error: {e}")

            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))

        self.failed += 1
        return False

    async def flush(self) -> None:
        """Wait for the in-flight batch, if any."""
        if self._batch_task is not None and not self._batch_task.done():
            await self._batch_task

    async def close(self) -> None:
        if self._batch_task is not None and not self._batch_task.done():
            self._batch_task.cancel()
            await asyncio.gather(self._batch_task, return_exceptions=True)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    # ─────────────────────────────────────────────────────────────────────
    # EventBus integration
    # ─────────────────────────────────────────────────────────────────────

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(StrategyEventType.ERROR, self.on_event, name="alerting_error")
        bus.subscribe(StrategyEventType.INIT, self.on_event, name="alerting_init")

    async def on_event(self, event: StrategyEvent) -> bool:
        alert = alert_from_event(event)
        if alert is None:
            return False
        return await self.send_alert(alert)

    # ─────────────────────────────────────────────────────────────────────
    # Convenience Methods
    # ─────────────────────────────────────────────────────────────────────

    async def alert_startup(self, strategies: int, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STARTUP,
            severity=AlertSeverity.INFO,
            title="Engine Started",
            message=f"{self.config.bot_name} started with {strategies} strategies",
            details={"strategies": strategies, **details},
        ))

    async def alert_shutdown(self, reason: str = "normal", **details) -> bool:
        severity = AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING
        return await self.send_alert(Alert(
            alert_type=AlertType.SHUTDOWN,
            severity=severity,
            title="Engine Shutdown",
            message=f"{self.config.bot_name} shutting down: {reason}",
            details=details,
        ))


def alert_from_event(event: StrategyEvent) -> Optional[Alert]:
    """Map an error or init event to an Alert. Progress-only init events map to None."""
    payload = event.payload
    status = str(payload.get("status", ""))
    if event.type == StrategyEventType.INIT and payload.get("phase") != "failed":
        return None
    if event.type not in (StrategyEventType.ERROR, StrategyEventType.INIT):
        return None

    if payload.get("crashed"):
        alert_type, severity = AlertType.RUNNER_CRASHED, AlertSeverity.CRITICAL
    else:
        alert_type, severity = _STATUS_ALERTS.get(status, (AlertType.STRATEGY_ERROR, AlertSeverity.WARNING))

    details = {k: v for k, v in payload.items() if k not in ("message", "symbol")}
    return Alert(
        alert_type=alert_type,
        severity=severity,
        title=f"Strategy {status or 'error'}",
        message=str(payload.get("message", "")),
        details=details,
        symbol=payload.get("symbol"),
        strategy_id=event.strategy_id,
    )
