"""Websocket endpoint for dashboard clients.

Clients send JSON actions and receive typed events::

    -> {"action": "subscribe", "agentAddress": "0xAA"}     # omit agentAddress for all agents
    -> {"action": "unsubscribe", "agentAddress": "0xAA"}
    -> {"action": "ping"}
    <- {"type": "status", "agentId": "0xAA", "timestamp": 1700000000000, "payload": {...}}
"""

import json

from aiohttp import WSMsgType, web

from heartwatch.realtime.broadcaster import SYSTEM_AGENT, RealtimeBroadcaster, RealtimeEvent
from heartwatch.shared.logger import get_logger


class RealtimeServer:
    """aiohttp application serving the realtime subscription protocol."""

    def __init__(
        self,
        broadcaster: RealtimeBroadcaster,
        host: str = "0.0.0.0",
        port: int = 8081,
        path: str = "/ws",
        ping_interval: float = 30.0,
    ):
        self._broadcaster = broadcaster
        self._host = host
        self._port = port
        self._path = path
        self._ping_interval = ping_interval
        self._runner: web.AppRunner | None = None
        self.logger = get_logger("realtime_server")

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self._path, self.handle)
        return app

    async def start(self):
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        self.logger.info(f"Realtime server listening on {self._host}:{self._port}{self._path}")

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self.logger.info("Realtime server stopped")

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=self._ping_interval)
        await ws.prepare(request)
        self.logger.info(f"Client connected from {request.remote}")

        await ws.send_json(RealtimeEvent(
            "status", SYSTEM_AGENT, {"message": "Connected to Heartwatch realtime updates"},
        ).to_dict())

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_client_message(ws, msg.data)
                elif msg.type in (WSMsgType.CLOSED, WSMsgType.ERROR):
                    break
        finally:
            self._broadcaster.unsubscribe(ws)
            self.logger.info(f"Client from {request.remote} disconnected")

        return ws

    async def _handle_client_message(self, ws: web.WebSocketResponse, raw: str):
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error(ws, "Invalid message format")
            return
        if not isinstance(message, dict):
            await self._send_error(ws, "Invalid message format")
            return

        action = message.get("action")
        agent = message.get("agentAddress")
        if agent is not None and not isinstance(agent, str):
            await self._send_error(ws, "agentAddress must be a string")
            return

        if action == "subscribe":
            self._broadcaster.subscribe(ws, agent)
            await ws.send_json(RealtimeEvent(
                "status", agent or SYSTEM_AGENT,
                {"message": f"Subscribed to {'agent' if agent else 'all agent'} updates"},
            ).to_dict())
        elif action == "unsubscribe":
            self._broadcaster.unsubscribe(ws, agent)
            await ws.send_json(RealtimeEvent(
                "status", agent or SYSTEM_AGENT, {"message": "Unsubscribed from updates"},
            ).to_dict())
        elif action == "ping":
            await ws.send_json(RealtimeEvent("status", SYSTEM_AGENT, {"message": "pong"}).to_dict())
        else:
            await self._send_error(ws, f"Unknown action: {action}")

    async def _send_error(self, ws: web.WebSocketResponse, text: str):
        await ws.send_json(RealtimeEvent("error", SYSTEM_AGENT, {"message": text}).to_dict())
