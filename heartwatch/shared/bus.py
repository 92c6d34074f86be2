"""Redis pub/sub bus carrying agent lifecycle messages into Heartwatch.

Agents publish on ``agents/heartbeat``, ``agents/created``, ``agents/death``
and ``agents/decision``. Every message is wrapped in a JSON envelope::

    {"from": <sender>, "channel": <channel>, "timestamp": <iso8601>, "payload": {...}}

If Redis drops the subscriber connection the listener reports the bus as
disconnected and resubscribes with exponential backoff.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from heartwatch.shared.logger import get_logger

HEARTBEAT_CHANNEL = "agents/heartbeat"
CREATED_CHANNEL = "agents/created"
DEATH_CHANNEL = "agents/death"
DECISION_CHANNEL = "agents/decision"

Handler = Callable[[str, dict], Awaitable[None] | None]


class RedisBus:
    """Async wrapper around Redis pub/sub with a JSON envelope."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ):
        self._redis_url = redis_url
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._publisher = None
        self._subscriber = None
        self._pubsub = None
        self._healthy = False
        self._handlers: dict[str, list[Handler]] = {}
        self._listen_task: asyncio.Task | None = None
        self.logger = get_logger("bus")

    @property
    def connected(self) -> bool:
        """False before ``connect()`` and while the listener is reconnecting."""
        if self._pubsub is None or not self._healthy:
            return False
        return self._listen_task is None or not self._listen_task.done()

    async def connect(self):
        self._publisher = aioredis.from_url(self._redis_url)
        self._subscriber = aioredis.from_url(self._redis_url)
        self._pubsub = self._subscriber.pubsub()
        self._healthy = True

    async def disconnect(self):
        self._healthy = False
        if self._listen_task:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        if self._pubsub:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        if self._subscriber:
            await self._subscriber.aclose()
            self._subscriber = None
        if self._publisher:
            await self._publisher.aclose()
            self._publisher = None

    async def publish(self, channel: str, payload: dict[str, Any], sender: str = "heartwatch"):
        envelope = {
            "from": sender,
            "channel": channel,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }
        await self._publisher.publish(channel, json.dumps(envelope))

    async def subscribe(self, channel: str, handler: Handler):
        """Add a handler for ``channel``. Several handlers may share a channel."""
        first = channel not in self._handlers
        self._handlers.setdefault(channel, []).append(handler)
        if first:
            await self._pubsub.subscribe(channel)
        if self._listen_task is None or self._listen_task.done():
            self._listen_task = asyncio.create_task(self._listen())

    async def unsubscribe(self, channel: str):
        self._handlers.pop(channel, None)
        await self._pubsub.unsubscribe(channel)

    async def _listen(self):
        try:
            while True:
                try:
                    await self._consume()
                    return
                except (RedisError, OSError) as e:
                    self._healthy = False
                    self.logger.error(f"Bus connection lost: {e}")
                await self._reconnect()
        except asyncio.CancelledError:
            pass

    async def _reconnect(self):
        delay = self._reconnect_delay
        while True:
            self.logger.info(f"Reconnecting bus in {delay}s")
            await asyncio.sleep(delay)
            try:
                await self._resubscribe()
            except (RedisError, OSError) as e:
                self.logger.warning(f"Bus reconnect failed: {e}")
                delay = min(delay * 2, self._max_reconnect_delay)
                continue
            self._healthy = True
            self.logger.info(f"Bus reconnected, resubscribed to {len(self._handlers)} channels")
            return

    async def _consume(self):
        async for message in self._pubsub.listen():
            if message["type"] != "message":
                continue
            channel = message["channel"]
            if isinstance(channel, bytes):
                channel = channel.decode()
            try:
                data = json.loads(message["data"])
            except (json.JSONDecodeError, TypeError):
                self.logger.warning(f"Dropping malformed message on {channel}")
                continue
            await self._dispatch(channel, data)

    async def _resubscribe(self):
        fresh = self._subscriber.pubsub()
        try:
            if self._handlers:
                await fresh.subscribe(*self._handlers)
        except (RedisError, OSError):
            await fresh.aclose()
            raise
        stale, self._pubsub = self._pubsub, fresh
        try:
            await stale.aclose()
        except (RedisError, OSError) as e:
            self.logger.debug(f"Closing stale pubsub failed: {e}")

    async def _dispatch(self, channel: str, data: dict):
        for handler in list(self._handlers.get(channel, [])):
            try:
                result = handler(channel, data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                # A broken handler must not stop the listener.
                self.logger.error(f"Handler for {channel} failed: {e}")
