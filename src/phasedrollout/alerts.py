"""
Alert dispatching.

Routes alerts to notification channels (log, generic webhook, Slack) based
on each channel's severity filter and rate limit. Delivery never raises:
a channel failure is logged and the remaining channels still receive the
alert.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import aiohttp

from phasedrollout.metrics import RolloutMetrics
from phasedrollout.models import Alert, AlertSeverity
from phasedrollout.observability import (
    ATTR_ALERT_CATEGORY,
    ATTR_ALERT_SEVERITY,
    ATTR_CHANNEL_NAME,
    ATTR_HTTP_URL,
    SpanKindEnum,
    Tracer,
    create_tracer,
)
from phasedrollout.plan import NotificationChannelConfig

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT_SECONDS = 5


class AlertChannel:
    """
    Base class for notification channels.

    Subclasses implement ``_send_impl``; ``send`` applies the severity
    filter and turns delivery errors into a logged ``False``.
    """

    def __init__(
        self,
        name: str,
        *,
        alert_levels: Iterable[AlertSeverity] = tuple(AlertSeverity),
        rate_limit: timedelta = timedelta(0),
        enabled: bool = True,
    ) -> None:
        self.name = name
        self.alert_levels = frozenset(alert_levels)
        self.rate_limit = rate_limit
        self.enabled = enabled

    def accepts(self, alert: Alert) -> bool:
        return self.enabled and alert.severity in self.alert_levels

    async def send(self, alert: Alert) -> bool:
        """
        Send an alert through this channel.

        Returns:
            True if the alert was delivered
        """
        if not self.accepts(alert):
            return False
        try:
            return await self._send_impl(alert)
        except Exception as e:
            logger.error("Failed to send alert via channel %s: %s", self.name, e)
            return False

    async def _send_impl(self, alert: Alert) -> bool:
        raise NotImplementedError


class LogChannel(AlertChannel):
    """Writes alerts to the log at the level matching their severity."""

    async def _send_impl(self, alert: Alert) -> bool:
        logger.log(
            alert.severity.log_level,
            "[ALERT] %s: %s (source: %s, details: %s)",
            alert.category,
            alert.message,
            alert.source,
            alert.details,
        )
        return True


class WebhookChannel(AlertChannel):
    """POSTs the alert as JSON to a URL."""

    def __init__(
        self,
        name: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, **kwargs)
        self.url = url
        self.headers = dict(headers or {})

    def payload(self, alert: Alert) -> dict[str, Any]:
        return alert.to_dict()

    async def _send_impl(self, alert: Alert) -> bool:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.url,
                json=self.payload(alert),
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=_HTTP_TIMEOUT_SECONDS),
            ) as response:
                if response.status >= 400:
                    logger.warning(
                        "Channel %s: %s answered HTTP %d", self.name, self.url, response.status
                    )
                    return False
                return True


class SlackChannel(WebhookChannel):
    """Posts alerts to a Slack incoming webhook."""

    _COLORS = {
        AlertSeverity.INFO: "#0000FF",
        AlertSeverity.WARNING: "#FFA500",
        AlertSeverity.ERROR: "#FF0000",
        AlertSeverity.CRITICAL: "#8B0000",
    }

    def payload(self, alert: Alert) -> dict[str, Any]:
        fields = [
            {"title": "Severity", "value": alert.severity.value.upper(), "short": True},
            {"title": "Source", "value": alert.source, "short": True},
            {"title": "Category", "value": alert.category, "short": True},
        ]
        migration_id = alert.details.get("migration_id")
        if migration_id:
            fields.append({"title": "Migration", "value": str(migration_id), "short": True})
        return {
            "attachments": [
                {
                    "color": self._COLORS[alert.severity],
                    "title": f"[{alert.severity.value.upper()}] {alert.category}",
                    "text": alert.message,
                    "fields": fields,
                    "footer": "phasedrollout",
                    "ts": int(alert.timestamp.timestamp()),
                }
            ]
        }


def build_channel(config: NotificationChannelConfig) -> AlertChannel:
    """
    Create a channel from its configuration.

    A configuration that cannot work (unknown type, missing URL) yields a
    disabled channel and a warning instead of an error.
    """
    common: dict[str, Any] = {
        "alert_levels": config.alert_levels,
        "rate_limit": config.rate_limit,
        "enabled": config.enabled,
    }
    kind = config.type.lower()
    if kind == "log":
        return LogChannel(config.name, **common)
    if kind == "webhook":
        url = config.config.get("url")
        if url:
            return WebhookChannel(config.name, url, headers=config.config.get("headers"), **common)
        problem = "webhook channel requires 'url'"
    elif kind == "slack":
        url = config.config.get("webhookUrl") or config.config.get("webhook_url")
        if url:
            return SlackChannel(config.name, url, **common)
        problem = "slack channel requires 'webhookUrl'"
    else:
        problem = f"unknown channel type '{config.type}'"

    logger.warning("Disabling notification channel %s: %s", config.name, problem)
    common["enabled"] = False
    return LogChannel(config.name, **common)


def build_channels(configs: Iterable[NotificationChannelConfig]) -> list[AlertChannel]:
    return [build_channel(config) for config in configs]


class AlertDispatcher:
    """
    Delivers alerts to channels and keeps a bounded alert history.

    Rate limiting is per channel and alert category: a second alert with
    the same category inside a channel's window is dropped for that
    channel (not queued).

    Example:
        >>> dispatcher = AlertDispatcher(build_channels(plan.notification_channels))
        >>> await dispatcher.dispatch(Alert(AlertSeverity.WARNING, "gate", "progression", "blocked"))
        >>> dispatcher.open_alerts
        [Alert(...)]
    """

    def __init__(
        self,
        channels: Sequence[AlertChannel] = (),
        *,
        max_history: int = 100,
        enabled: bool = True,
        clock: Callable[[], datetime] | None = None,
        metrics: RolloutMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            channels: Notification channels
            max_history: Number of alerts kept in history
            enabled: When False alerts are recorded but not delivered
            clock: Callable returning the current time (defaults to UTC now)
            metrics: Optional rollout metrics
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._channels = list(channels)
        self._history: deque[Alert] = deque(maxlen=max_history)
        self._enabled = enabled
        self._clock = clock or (lambda: datetime.now(UTC))
        self._metrics = metrics
        # (channel name, category) -> last delivery time
        self._last_sent: dict[tuple[str, str], datetime] = {}

    @property
    def channels(self) -> list[AlertChannel]:
        return list(self._channels)

    @property
    def history(self) -> list[Alert]:
        return list(self._history)

    @property
    def open_alerts(self) -> list[Alert]:
        return [alert for alert in self._history if alert.is_open]

    def _rate_limited(self, channel: AlertChannel, alert: Alert, now: datetime) -> bool:
        if channel.rate_limit <= timedelta(0):
            return False
        last = self._last_sent.get((channel.name, alert.category))
        return last is not None and now - last < channel.rate_limit

    async def dispatch(self, alert: Alert) -> None:
        """
        Record an alert and deliver it to every matching channel.

        Never raises.
        """
        self._history.append(alert)
        if self._metrics is not None:
            self._metrics.record_alert(alert.severity.value)
        if not self._enabled:
            return

        with self._tracer.span(
            "phasedrollout.alerts.dispatch",
            {
                ATTR_ALERT_SEVERITY: alert.severity.value,
                ATTR_ALERT_CATEGORY: alert.category,
            },
        ):
            now = self._clock()
            for channel in self._channels:
                if not channel.accepts(alert):
                    continue
                if self._rate_limited(channel, alert, now):
                    logger.debug(
                        "Alert %s suppressed on channel %s (rate limit)",
                        alert.category,
                        channel.name,
                    )
                    continue
                attributes = {ATTR_CHANNEL_NAME: channel.name}
                kind = SpanKindEnum.INTERNAL
                if isinstance(channel, WebhookChannel):
                    attributes[ATTR_HTTP_URL] = channel.url
                    kind = SpanKindEnum.CLIENT
                with self._tracer.span_with_kind("phasedrollout.alerts.send", kind, attributes):
                    delivered = await channel.send(alert)
                if delivered:
                    self._last_sent[(channel.name, alert.category)] = now

    def _find(self, alert_id: str) -> Alert | None:
        for alert in self._history:
            if alert.id == alert_id:
                return alert
        return None

    def acknowledge(self, alert_id: str) -> bool:
        """Acknowledge an alert; returns False if it is not in history."""
        alert = self._find(alert_id)
        if alert is None:
            return False
        alert.acknowledge()
        return True

    def resolve(self, alert_id: str) -> bool:
        """Resolve an alert; returns False if it is not in history."""
        alert = self._find(alert_id)
        if alert is None:
            return False
        alert.resolve(self._clock())
        return True


__all__ = [
    "AlertChannel",
    "LogChannel",
    "WebhookChannel",
    "SlackChannel",
    "build_channel",
    "build_channels",
    "AlertDispatcher",
]
