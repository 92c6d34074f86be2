"""Fan-out of agent events to live dashboard connections.

A connection is anything with ``async send_json(data)`` and a ``closed``
attribute, e.g. ``aiohttp.web.WebSocketResponse``. The registry is only
changed between awaits and ``publish`` works on a snapshot, so clients can
come and go while a broadcast is in flight.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from heartwatch.shared.clock import now_ms
from heartwatch.shared.logger import get_logger

EVENT_TYPES = ("heartbeat", "decision", "status", "death", "error")
SYSTEM_AGENT = "system"


class Connection(Protocol):
    closed: bool

    async def send_json(self, data: Any) -> None: ...


@dataclass
class RealtimeEvent:
    type: str
    agent_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.type}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "agentId": self.agent_id,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }


@dataclass
class Subscriber:
    connection: Connection
    agent_filters: set[str] = field(default_factory=set)
    connected_at: int = field(default_factory=now_ms)

    def wants(self, agent_id: str) -> bool:
        if agent_id == SYSTEM_AGENT or not self.agent_filters:
            return True
        return agent_id in self.agent_filters


class RealtimeBroadcaster:
    """Registry of subscriber connections with per-agent filtering."""

    def __init__(self, send_timeout: float = 5.0):
        self._subscribers: dict[Connection, Subscriber] = {}
        self._send_timeout = send_timeout
        self.logger = get_logger("realtime")

    def subscribe(self, connection: Connection, agent_filter: str | None = None) -> Subscriber:
        """Register ``connection``; a filter narrows it to that agent.

        Subscribing again adds another agent. Subscribing without a filter
        widens the connection back to all agents.
        """
        subscriber = self._subscribers.get(connection)
        if subscriber is None:
            subscriber = Subscriber(connection=connection)
            self._subscribers[connection] = subscriber
            self.logger.info(f"Subscriber added ({len(self._subscribers)} total)")
        if agent_filter:
            subscriber.agent_filters.add(agent_filter)
        else:
            subscriber.agent_filters.clear()
        return subscriber

    def unsubscribe(self, connection: Connection, agent_filter: str | None = None):
        """Drop one agent filter, or the whole connection when no filter is given."""
        subscriber = self._subscribers.get(connection)
        if subscriber is None:
            return
        if agent_filter:
            subscriber.agent_filters.discard(agent_filter)
            if subscriber.agent_filters:
                return
        self._subscribers.pop(connection, None)
        self.logger.info(f"Subscriber removed ({len(self._subscribers)} total)")

    def is_subscribed(self, connection: Connection) -> bool:
        return connection in self._subscribers

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: RealtimeEvent) -> int:
        """Send ``event`` to every matching subscriber. Returns how many got it."""
        targets = [s for s in list(self._subscribers.values()) if s.wants(event.agent_id)]
        if not targets:
            return 0

        data = event.to_dict()
        outcomes = await asyncio.gather(
            *(self._send(s, data) for s in targets),
            return_exceptions=True,
        )

        delivered = 0
        for subscriber, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.warning(f"Dropping subscriber after failed send: {outcome!r}")
                if self._subscribers.get(subscriber.connection) is subscriber:
                    del self._subscribers[subscriber.connection]
            else:
                delivered += 1
        return delivered

    async def _send(self, subscriber: Subscriber, data: dict[str, Any]):
        if subscriber.connection.closed:
            raise ConnectionError("connection closed")
        async with asyncio.timeout(self._send_timeout):
            await subscriber.connection.send_json(data)

    async def publish_heartbeat(self, agent_id: str, nonce: int, last_seen_at: int | None) -> int:
        return await self.publish(RealtimeEvent(
            "heartbeat", agent_id, {"nonce": nonce, "lastSeenAt": last_seen_at},
        ))

    async def publish_decision(self, agent_id: str, decision: dict[str, Any]) -> int:
        return await self.publish(RealtimeEvent("decision", agent_id, decision))

    async def publish_status(self, agent_id: str, status: str, **details) -> int:
        return await self.publish(RealtimeEvent("status", agent_id, {"status": status, **details}))

    async def publish_death(self, agent_id: str, reason: str) -> int:
        return await self.publish(RealtimeEvent("death", agent_id, {"reason": reason}))
