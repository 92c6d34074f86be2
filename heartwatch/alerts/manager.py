"""Alert manager: cooldown, concurrent channel fan-out, dispatch history.

``send_alert`` never raises because one channel failed. It attempts every
channel, waits for all of them, and returns a ``DispatchResult`` listing
which channels delivered and which gave up.
"""

import asyncio
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from heartwatch.alerts.channels import Alert, AlertChannel
from heartwatch.shared.clock import now_ms
from heartwatch.shared.errors import ChannelDeliveryError, ConfigurationError
from heartwatch.shared.logger import get_logger


@dataclass
class DispatchResult:
    alert: Alert
    suppressed: bool = False
    delivered: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.suppressed and not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.alert.to_dict(),
            "suppressed": self.suppressed,
            "delivered": list(self.delivered),
            "failures": dict(self.failures),
        }


class AlertManager:
    """Route alerts to Discord, Slack, generic webhooks and email relays."""

    def __init__(
        self,
        channels: list[AlertChannel],
        cooldown_ms: int = 5 * 60 * 1000,
        max_retries: int = 3,
        base_delay: float = 1.0,
        timeout: float = 10.0,
        history_capacity: int = 1000,
        clock: Callable[[], int] | None = None,
    ):
        self._channels = _unique_names(channels)
        self._cooldown_ms = cooldown_ms
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._timeout = timeout
        self._clock = clock or now_ms
        self._last_sent: dict[tuple[str, str], int] = {}

        self._stats_lock = threading.Lock()
        self._history: deque[dict[str, Any]] = deque(maxlen=history_capacity)
        self._total = 0
        self._suppressed = 0
        self._by_channel: dict[str, int] = {}
        self._by_severity: dict[str, int] = {}
        self._failures_by_channel: dict[str, int] = {}

        self.logger = get_logger("alerts")

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "AlertManager":
        return cls(
            channels=[AlertChannel.from_dict(c) for c in settings.get("channels", [])],
            cooldown_ms=settings.get("cooldown_ms", 5 * 60 * 1000),
            max_retries=settings.get("max_retries", 3),
            base_delay=settings.get("base_delay_seconds", 1.0),
            timeout=settings.get("timeout_seconds", 10.0),
            history_capacity=settings.get("history_capacity", 1000),
        )

    @property
    def channels(self) -> list[AlertChannel]:
        return list(self._channels)

    async def send_alert(self, alert: Alert) -> DispatchResult:
        """Deliver ``alert`` to every channel unless its key is cooling down."""
        # No await between the check and the write: concurrent alerts for the
        # same key cannot both get through.
        key = alert.cooldown_key
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self._cooldown_ms:
            self.logger.debug(f"Alert in cooldown, skipping: {key[0]}/{key[1]}")
            with self._stats_lock:
                self._suppressed += 1
            return DispatchResult(alert=alert, suppressed=True)
        self._last_sent[key] = now

        result = DispatchResult(alert=alert)
        if not self._channels:
            self.logger.warning(f"No alert channels configured, dropping {alert.id}")
            self._record(result)
            return result

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            outcomes = await asyncio.gather(
                *(self._deliver(client, alert, channel) for channel in self._channels),
                return_exceptions=True,
            )

        for channel, outcome in zip(self._channels, outcomes):
            if isinstance(outcome, BaseException):
                result.failures[channel.name] = str(outcome)
            else:
                result.delivered.append(channel.name)

        if result.failures:
            self.logger.error(
                f"Alert {alert.id} failed on {len(result.failures)} of {len(self._channels)} channels",
                extra={"log_data": result.failures},
            )
        else:
            self.logger.info(f"Alert {alert.id} sent to {', '.join(result.delivered)}")

        self._record(result)
        return result

    async def _deliver(self, client: httpx.AsyncClient, alert: Alert, channel: AlertChannel) -> int:
        """POST to one channel with exponential backoff. Returns the attempt that succeeded.

        Raises:
            ChannelDeliveryError: After ``max_retries`` failed attempts.
        """
        payload = channel.format(alert)
        headers = channel.request_headers()
        last_error = ""
        for attempt in range(1, self._max_retries + 1):
            try:
                async with asyncio.timeout(self._timeout):
                    response = await client.post(channel.url, json=payload, headers=headers)
                if 200 <= response.status_code < 300:
                    return attempt
                last_error = f"HTTP {response.status_code}"
            except (httpx.HTTPError, TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}"

            self.logger.warning(
                f"Attempt {attempt}/{self._max_retries} to {channel.name} failed: {last_error}"
            )
            if attempt < self._max_retries:
                await asyncio.sleep(self._base_delay * 2 ** attempt)

        raise ChannelDeliveryError(channel.name, self._max_retries, last_error)

    def _record(self, result: DispatchResult):
        entry = result.to_dict()
        with self._stats_lock:
            self._history.append(entry)
            self._total += 1
            severity = result.alert.severity
            self._by_severity[severity] = self._by_severity.get(severity, 0) + 1
            for name in result.delivered:
                self._by_channel[name] = self._by_channel.get(name, 0) + 1
            for name in result.failures:
                self._failures_by_channel[name] = self._failures_by_channel.get(name, 0) + 1

    def get_alert_history(self, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent ``limit`` dispatch records, oldest first."""
        with self._stats_lock:
            snapshot = list(self._history)
        return snapshot[-limit:] if limit > 0 else []

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            return {
                "total_alerts": self._total,
                "alerts_by_channel": dict(self._by_channel),
                "alerts_by_severity": dict(self._by_severity),
                "failures_by_channel": dict(self._failures_by_channel),
                "suppressed": self._suppressed,
                "history_size": len(self._history),
            }

    def reset_cooldown(self, agent_id: str | None = None):
        """Forget cooldown entries, for one agent or all of them."""
        if agent_id is None:
            self._last_sent.clear()
            return
        for key in [k for k in self._last_sent if k[0] == agent_id]:
            del self._last_sent[key]


def _unique_names(channels: list[AlertChannel]) -> list[AlertChannel]:
    """Validate channels and number unnamed duplicates: webhook, webhook-2, ...

    Raises:
        ConfigurationError: If two channels share an explicit name.
    """
    seen: set[str] = set()
    for channel in channels:
        channel.validate()
        if channel.name in seen:
            if channel.name != channel.type:
                raise ConfigurationError(f"Duplicate channel name: {channel.name}")
            n = 2
            while f"{channel.type}-{n}" in seen:
                n += 1
            channel.name = f"{channel.type}-{n}"
        seen.add(channel.name)
    return list(channels)
