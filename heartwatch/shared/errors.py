"""Error taxonomy for the heartbeat monitor and alert pipeline.

Only ``ConfigurationError`` and ``InvalidTransition`` are meant to reach the
caller that triggered them. The other two are raised inside a single agent
poll or a single channel delivery and are caught, logged and recorded there.
"""


class HeartwatchError(Exception):
    """Base class for all Heartwatch errors."""


class TransientSourceError(HeartwatchError):
    """The liveness source could not answer for one agent this cycle."""

    def __init__(self, agent_id: str, reason: str):
        super().__init__(f"Liveness fetch failed for {agent_id}: {reason}")
        self.agent_id = agent_id
        self.reason = reason


class InvalidTransition(HeartwatchError):
    """A missing report was asked to move to a state it cannot reach."""

    def __init__(self, report_id: str, current: str, target: str):
        super().__init__(f"Report {report_id} cannot go from {current} to {target}")
        self.report_id = report_id
        self.current = current
        self.target = target


class ChannelDeliveryError(HeartwatchError):
    """One notification channel exhausted its retries."""

    def __init__(self, channel: str, attempts: int, cause: Exception | str | None = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Delivery to {channel} failed after {attempts} attempts{detail}")
        self.channel = channel
        self.attempts = attempts
        self.cause = cause


class ConfigurationError(HeartwatchError):
    """Missing or invalid configuration, detected at startup."""
