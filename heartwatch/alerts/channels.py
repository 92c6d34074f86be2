"""Alerts and the notification channels they are delivered to.

Every channel carries the same facts (alert type, agent, severity, message,
timestamp). Only the request shape differs per channel type.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from heartwatch.shared.clock import now_ms
from heartwatch.shared.errors import ConfigurationError

SEVERITIES = ("info", "warning", "critical")
CHANNEL_TYPES = ("discord", "slack", "webhook", "email")

SOURCE_NAME = "heartwatch"
FOOTER = "Heartwatch Monitoring"

DISCORD_COLORS = {"critical": 15158332, "warning": 16776960, "info": 3447003}
SLACK_COLORS = {"critical": "danger", "warning": "warning", "info": "good"}


@dataclass
class Alert:
    agent_id: str
    type: str
    severity: str
    message: str
    timestamp: int = field(default_factory=now_ms)
    id: str = ""

    def __post_init__(self):
        if self.severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {self.severity}")
        if not self.id:
            self.id = f"alert-{self.agent_id}-{uuid.uuid4().hex[:8]}"

    @property
    def cooldown_key(self) -> tuple[str, str]:
        # Severity is not part of the key.
        return (self.agent_id, self.type)

    def iso_time(self) -> str:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc).isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "timestamp": self.timestamp,
        }


@dataclass
class AlertChannel:
    type: str
    url: str = ""
    name: str = ""
    token: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    recipients: list[str] = field(default_factory=list)
    username: str = ""

    def __post_init__(self):
        if not self.name:
            self.name = self.type

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AlertChannel":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "type" not in known:
            raise ConfigurationError(f"Channel entry without type: {data}")
        return cls(**known)

    def validate(self):
        """Fail fast on a channel that could never deliver.

        Raises:
            ConfigurationError: Unknown type, missing URL, or email without recipients.
        """
        if self.type not in CHANNEL_TYPES:
            raise ConfigurationError(f"Unknown channel type: {self.type}")
        if not self.url:
            raise ConfigurationError(f"Channel {self.name} ({self.type}) has no URL configured")
        if not self.url.startswith(("https://", "http://")):
            raise ConfigurationError(f"Channel {self.name} URL must be http(s): {self.url}")
        if self.type == "email" and not self.recipients:
            raise ConfigurationError(f"Email channel {self.name} has no recipients")

    def request_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self.headers}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def format(self, alert: Alert) -> dict[str, Any]:
        """Build the request body for this channel type."""
        return FORMATTERS[self.type](alert, self)


def format_discord(alert: Alert, channel: AlertChannel) -> dict[str, Any]:
    payload = {
        "embeds": [{
            "title": f"Heartwatch Alert: {alert.type}",
            "description": alert.message,
            "color": DISCORD_COLORS[alert.severity],
            "fields": [
                {"name": "Agent", "value": alert.agent_id, "inline": True},
                {"name": "Severity", "value": alert.severity, "inline": True},
                {"name": "Time", "value": alert.iso_time(), "inline": True},
            ],
            "footer": {"text": FOOTER},
            "timestamp": alert.iso_time(),
        }],
    }
    if channel.username:
        payload["username"] = channel.username
    return payload


def format_slack(alert: Alert, channel: AlertChannel) -> dict[str, Any]:
    payload = {
        "attachments": [{
            "color": SLACK_COLORS[alert.severity],
            "title": f"Heartwatch Alert: {alert.type}",
            "text": alert.message,
            "fields": [
                {"title": "Agent", "value": alert.agent_id, "short": True},
                {"title": "Severity", "value": alert.severity, "short": True},
            ],
            "footer": FOOTER,
            "ts": alert.timestamp // 1000,
        }],
    }
    if channel.username:
        payload["username"] = channel.username
    return payload


def format_webhook(alert: Alert, channel: AlertChannel) -> dict[str, Any]:
    return {
        "source": SOURCE_NAME,
        "type": alert.type,
        "severity": alert.severity,
        "message": alert.message,
        "agentAddress": alert.agent_id,
        "timestamp": alert.timestamp,
        "id": alert.id,
    }


def format_email(alert: Alert, channel: AlertChannel) -> dict[str, Any]:
    return {
        "to": list(channel.recipients),
        "subject": f"[{alert.severity.upper()}] Heartwatch: {alert.type} for {alert.agent_id}",
        "text": (
            f"{alert.message}\n\n"
            f"Agent: {alert.agent_id}\n"
            f"Severity: {alert.severity}\n"
            f"Time: {alert.iso_time()}\n"
            f"Alert ID: {alert.id}"
        ),
    }


FORMATTERS = {
    "discord": format_discord,
    "slack": format_slack,
    "webhook": format_webhook,
    "email": format_email,
}
