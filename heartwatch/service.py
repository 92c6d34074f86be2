"""Heartwatch launcher: wires the monitor, alerts, reports and realtime server."""

import asyncio
import logging
import signal
import sys
from pathlib import Path

from heartwatch.alerts.manager import AlertManager
from heartwatch.monitor.heartbeat import HeartbeatMonitor
from heartwatch.monitor.reports import MissingReportStore
from heartwatch.monitor.source import BusLivenessSource, HttpLivenessSource
from heartwatch.realtime.broadcaster import RealtimeBroadcaster
from heartwatch.realtime.server import RealtimeServer
from heartwatch.shared.bus import CREATED_CHANNEL, DEATH_CHANNEL, DECISION_CHANNEL, RedisBus
from heartwatch.shared.config import build_settings, load_config
from heartwatch.shared.logger import configure_logging, get_logger

DEFAULT_CONFIG = str(Path(__file__).parent / "config.json")


class HeartwatchService:
    """Owns every component and their start/stop order."""

    def __init__(self, config_path: str | None = None, bus: RedisBus | None = None):
        raw = load_config(config_path) if config_path else {}
        self.settings = build_settings(raw)
        level = getattr(logging, str(self.settings["log_level"]).upper(), logging.INFO)
        configure_logging(level, self.settings["log_file"])
        self.logger = get_logger("service")

        self._shutdown_event = asyncio.Event()
        self.bus = bus or RedisBus(redis_url=self.settings["redis_url"])

        liveness = self.settings["liveness"]
        if liveness["type"] == "http":
            self.source = HttpLivenessSource(
                base_url=liveness["url"],
                timeout=liveness.get("timeout_seconds", 10.0),
                token=liveness.get("token", ""),
            )
        else:
            self.source = BusLivenessSource(self.bus)

        persist = self.settings["reports"].get("persist", False)
        self.reports = MissingReportStore(redis_url=self.settings["redis_url"] if persist else None)
        self.alerts = AlertManager.from_settings(self.settings["alerts"])
        self.broadcaster = RealtimeBroadcaster()

        realtime = self.settings["realtime"]
        self.server = None
        if realtime.get("enabled", True):
            self.server = RealtimeServer(
                self.broadcaster,
                host=realtime["host"],
                port=realtime["port"],
                path=realtime["path"],
            )

        self.monitor = HeartbeatMonitor(
            source=self.source,
            reports=self.reports,
            alerts=self.alerts,
            broadcaster=self.broadcaster,
            poll_interval=self.settings["poll_interval_seconds"],
            max_concurrency=self.settings["max_concurrency"],
            default_expected_interval_ms=self.settings["default_expected_interval_ms"],
            default_grace_multiplier=self.settings["default_grace_multiplier"],
        )
        for agent in self.settings["agents"]:
            self.monitor.track(
                agent["id"],
                expected_interval_ms=agent.get("expected_interval_ms"),
                grace_multiplier=agent.get("grace_multiplier"),
            )

        self.logger.info(
            f"Heartwatch initialized with {len(self.settings['agents'])} agents "
            f"and {len(self.alerts.channels)} alert channels"
        )

    async def start(self):
        """Start everything, block until a shutdown signal arrives."""
        self._install_signal_handlers()
        await self.startup()
        await self._shutdown_event.wait()
        await self.stop()

    async def startup(self):
        await self.bus.connect()
        if isinstance(self.source, BusLivenessSource):
            await self.source.start()
        await self.bus.subscribe(CREATED_CHANNEL, self._on_agent_created)
        await self.bus.subscribe(DEATH_CHANNEL, self._on_agent_death)
        await self.bus.subscribe(DECISION_CHANNEL, self._on_agent_decision)
        await self.reports.load()
        if self.server:
            await self.server.start()
        await self.monitor.start()
        self.logger.info("Heartwatch running")

    async def stop(self):
        """Stop in dependency order; in-flight polls and dispatches finish first."""
        self.logger.info("Shutting down Heartwatch...")
        await self.monitor.stop()
        if self.server:
            await self.server.stop()
        await self.reports.close()
        try:
            await self.bus.disconnect()
        except Exception as e:
            self.logger.error(f"Error disconnecting bus: {e}")
        self.logger.info("Heartwatch stopped")

    def request_shutdown(self):
        self._shutdown_event.set()

    async def _on_agent_created(self, channel: str, message: dict):
        payload = message.get("payload", {})
        agent = payload.get("agent")
        if not agent:
            return
        try:
            self.monitor.track(
                agent,
                expected_interval_ms=payload.get("expected_interval_ms"),
                grace_multiplier=payload.get("grace_multiplier"),
            )
        except (TypeError, ValueError) as e:
            self.logger.warning(f"Ignoring agents/created for {agent}: {e}")
            return
        await self.broadcaster.publish_status(agent, "healthy", event="created")
        await self.monitor.check_agent(agent)

    async def _on_agent_death(self, channel: str, message: dict):
        payload = message.get("payload", {})
        agent = payload.get("agent")
        if agent:
            await self.monitor.record_death(agent, payload.get("reason", "reported dead"))

    async def _on_agent_decision(self, channel: str, message: dict):
        payload = message.get("payload", {})
        agent = payload.get("agent")
        if agent:
            decision = {k: v for k, v in payload.items() if k != "agent"}
            await self.broadcaster.publish_decision(agent, decision)

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._shutdown_event.set)
            except NotImplementedError:
                pass  # Windows fallback below
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, lambda s, f: self._shutdown_event.set())


def main():
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    if config_path is None and Path(DEFAULT_CONFIG).exists():
        config_path = DEFAULT_CONFIG

    service = HeartwatchService(config_path=config_path)
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        print("\nHeartwatch shutting down...")


if __name__ == "__main__":
    main()
