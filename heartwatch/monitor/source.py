"""Liveness sources consulted by the heartbeat monitor.

A source answers one question per agent: when was the last heartbeat and
what is its nonce. Any failure to answer is a ``TransientSourceError``;
the monitor treats it as "no information this cycle", never as "agent down".
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx

from heartwatch.shared.bus import HEARTBEAT_CHANNEL, RedisBus
from heartwatch.shared.clock import now_ms
from heartwatch.shared.errors import TransientSourceError


@dataclass
class Heartbeat:
    last_seen_at: int | None
    nonce: int | None

    def to_dict(self) -> dict[str, Any]:
        return {"last_seen_at": self.last_seen_at, "nonce": self.nonce}


class LivenessSource(Protocol):
    async def get_heartbeat(self, agent_id: str) -> Heartbeat: ...


class BusLivenessSource:
    """Builds liveness from heartbeat messages seen on the Redis bus.

    Payloads look like ``{"agent": "0xAA", "nonce": 11, "timestamp": ...}``.
    Agents that do not send a nonce get a local counter bumped per message.
    An agent never heard from yields ``Heartbeat(None, None)``.
    """

    def __init__(self, bus: RedisBus):
        self._bus = bus
        self._latest: dict[str, Heartbeat] = {}

    async def start(self):
        await self._bus.subscribe(HEARTBEAT_CHANNEL, self._on_heartbeat)

    async def get_heartbeat(self, agent_id: str) -> Heartbeat:
        if not self._bus.connected:
            raise TransientSourceError(agent_id, "bus not connected")
        return self._latest.get(agent_id, Heartbeat(last_seen_at=None, nonce=None))

    async def _on_heartbeat(self, channel: str, message: dict):
        payload = message.get("payload", {})
        agent = payload.get("agent")
        if not agent:
            return
        self.record(agent, payload.get("nonce"), _parse_timestamp(payload.get("timestamp")))

    def record(self, agent_id: str, nonce: int | None = None, timestamp: int | None = None):
        """Store a heartbeat. Out-of-order nonces are kept as-is; the monitor judges them."""
        previous = self._latest.get(agent_id)
        if nonce is None:
            nonce = (previous.nonce or 0) + 1 if previous else 1
        self._latest[agent_id] = Heartbeat(
            last_seen_at=timestamp if timestamp is not None else now_ms(),
            nonce=int(nonce),
        )


class HttpLivenessSource:
    """Reads liveness from an HTTP endpoint fronting the ledger client.

    ``GET {base_url}/agents/{agent_id}/heartbeat`` must return
    ``{"lastSeenAt": <ms>, "nonce": <int>}``.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, token: str = ""):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._token = token

    async def get_heartbeat(self, agent_id: str) -> Heartbeat:
        headers = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(
                    f"{self._base_url}/agents/{agent_id}/heartbeat",
                    headers=headers,
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientSourceError(agent_id, str(e)) from e

        try:
            last_seen = data.get("lastSeenAt")
            nonce = data.get("nonce")
            return Heartbeat(
                last_seen_at=int(last_seen) if last_seen is not None else None,
                nonce=int(nonce) if nonce is not None else None,
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise TransientSourceError(agent_id, f"malformed response: {data!r}") from e


def _parse_timestamp(value) -> int | None:
    """Accept epoch milliseconds or an ISO-8601 string."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(datetime.fromisoformat(str(value)).timestamp() * 1000)
    except ValueError:
        return None
