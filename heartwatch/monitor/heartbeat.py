"""Heartbeat monitor for the agent fleet.

Each poll cycle asks the liveness source about every tracked agent and
compares the answer with what was seen before:

- a higher nonce is a heartbeat: the agent is alive and any open missing
  report is resolved;
- no new nonce past ``last_seen_at + expected_interval_ms * grace_multiplier``
  marks the agent missing, opens a report and raises an alert;
- a failed fetch changes nothing and is retried next cycle.

Updates for one agent are serialized by that agent's lock. Different agents
are checked concurrently, up to ``max_concurrency`` at a time.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

from heartwatch.alerts.channels import Alert
from heartwatch.alerts.manager import AlertManager
from heartwatch.monitor.reports import MissingReportStore
from heartwatch.monitor.source import Heartbeat, LivenessSource
from heartwatch.realtime.broadcaster import RealtimeBroadcaster, RealtimeEvent
from heartwatch.shared.clock import now_ms
from heartwatch.shared.errors import TransientSourceError
from heartwatch.shared.logger import get_logger

DEFAULT_INTERVAL_MS = 6 * 60 * 60 * 1000
DEFAULT_GRACE = 1.5

ALIVE = "alive"
OK = "ok"
MISSING = "missing"
STILL_MISSING = "still_missing"
INCONCLUSIVE = "inconclusive"
DEAD = "dead"
UNTRACKED = "untracked"


def check_cadence(expected_interval_ms: int, grace_multiplier: float):
    if expected_interval_ms <= 0:
        raise ValueError("expected_interval_ms must be positive")
    if grace_multiplier < 1.0:
        raise ValueError("grace_multiplier must be >= 1.0")


@dataclass
class AgentLivenessState:
    agent_id: str
    expected_interval_ms: int = DEFAULT_INTERVAL_MS
    grace_multiplier: float = DEFAULT_GRACE
    last_seen_at: int | None = None
    last_nonce: int | None = None
    is_alive: bool = True
    is_dead: bool = False
    registered_at: int = field(default_factory=now_ms)

    def __post_init__(self):
        check_cadence(self.expected_interval_ms, self.grace_multiplier)

    def deadline(self) -> int:
        # Never-seen agents get one full grace window from registration.
        base = self.last_seen_at if self.last_seen_at is not None else self.registered_at
        return base + int(self.expected_interval_ms * self.grace_multiplier)

    def severity_for(self, now: int) -> str:
        overdue = now - self.deadline()
        return "warning" if overdue <= 2 * self.expected_interval_ms else "critical"

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "expected_interval_ms": self.expected_interval_ms,
            "grace_multiplier": self.grace_multiplier,
            "last_seen_at": self.last_seen_at,
            "last_nonce": self.last_nonce,
            "is_alive": self.is_alive,
            "is_dead": self.is_dead,
            "registered_at": self.registered_at,
        }


class HeartbeatMonitor:
    """Poll the liveness source and turn missed heartbeats into reports and alerts."""

    def __init__(
        self,
        source: LivenessSource,
        reports: MissingReportStore,
        alerts: AlertManager | None = None,
        broadcaster: RealtimeBroadcaster | None = None,
        poll_interval: float = 60,
        max_concurrency: int = 10,
        default_expected_interval_ms: int = DEFAULT_INTERVAL_MS,
        default_grace_multiplier: float = DEFAULT_GRACE,
        clock: Callable[[], int] | None = None,
    ):
        self._source = source
        self._reports = reports
        self._alerts = alerts
        self._broadcaster = broadcaster
        self._poll_interval = poll_interval
        self._default_interval = default_expected_interval_ms
        self._default_grace = default_grace_multiplier
        self._clock = clock or now_ms

        self._states: dict[str, AgentLivenessState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._poll_lock = asyncio.Lock()
        self._alert_handlers: list[Callable] = []
        self._pending: set[asyncio.Task] = set()

        self._running = False
        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self.logger = get_logger("monitor")

    # --- tracking ---

    def track(
        self,
        agent_id: str,
        expected_interval_ms: int | None = None,
        grace_multiplier: float | None = None,
        last_seen_at: int | None = None,
        last_nonce: int | None = None,
    ) -> AgentLivenessState:
        """Start tracking an agent. Re-tracking keeps its history and updates the cadence.

        Raises:
            ValueError: If the interval is not positive or the grace multiplier is below 1.0.
        """
        existing = self._states.get(agent_id)
        if existing:
            interval = existing.expected_interval_ms if expected_interval_ms is None else expected_interval_ms
            grace = existing.grace_multiplier if grace_multiplier is None else grace_multiplier
            check_cadence(interval, grace)
            existing.expected_interval_ms = interval
            existing.grace_multiplier = grace
            return existing

        if expected_interval_ms is None:
            expected_interval_ms = self._default_interval
        if grace_multiplier is None:
            grace_multiplier = self._default_grace
        state = AgentLivenessState(
            agent_id=agent_id,
            expected_interval_ms=expected_interval_ms,
            grace_multiplier=grace_multiplier,
            last_seen_at=last_seen_at,
            last_nonce=last_nonce,
            registered_at=self._clock(),
        )
        self._states[agent_id] = state
        self._locks[agent_id] = asyncio.Lock()
        self.logger.info(f"Tracking agent {agent_id}", extra={"log_data": state.to_dict()})
        return state

    async def untrack(self, agent_id: str) -> bool:
        """Stop tracking an agent. Waits for any update in progress for it."""
        lock = self._locks.get(agent_id)
        if lock is None:
            return False
        async with lock:
            self._states.pop(agent_id, None)
            self._locks.pop(agent_id, None)
        self.logger.info(f"Stopped tracking agent {agent_id}")
        return True

    def tracked_agents(self) -> list[str]:
        return list(self._states)

    def get_state(self, agent_id: str) -> AgentLivenessState | None:
        return self._states.get(agent_id)

    def on_alert(self, handler: Callable[[Alert], Any]):
        """Register an extra listener called with every alert the monitor raises."""
        self._alert_handlers.append(handler)

    # --- polling ---

    async def poll(self) -> dict[str, str]:
        """Check every tracked agent once. Returns the outcome per agent."""
        async with self._poll_lock:
            agents = list(self._states)
            outcomes = await asyncio.gather(
                *(self._check_bounded(a) for a in agents),
                return_exceptions=True,
            )

        results = {}
        for agent_id, outcome in zip(agents, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.error(f"Check for {agent_id} failed: {outcome!r}")
                results[agent_id] = INCONCLUSIVE
            else:
                results[agent_id] = outcome
        self.logger.debug(f"Poll cycle finished for {len(agents)} agents", extra={"log_data": results})
        return results

    async def _check_bounded(self, agent_id: str) -> str:
        async with self._semaphore:
            return await self.check_agent(agent_id)

    async def check_agent(self, agent_id: str) -> str:
        """Fetch and apply liveness for a single agent."""
        state = self._states.get(agent_id)
        if state is None:
            return UNTRACKED

        try:
            heartbeat = await self._source.get_heartbeat(agent_id)
        except TransientSourceError as e:
            self.logger.warning(f"Inconclusive poll for {agent_id}: {e.reason}")
            return INCONCLUSIVE
        except Exception as e:
            self.logger.error(f"Liveness source error for {agent_id}: {e!r}")
            return INCONCLUSIVE

        lock = self._locks.get(agent_id)
        if lock is None:
            return UNTRACKED
        async with lock:
            # Removed or replaced while the fetch was in flight.
            if self._states.get(agent_id) is not state:
                return UNTRACKED
            return await self._apply(state, heartbeat)

    async def _apply(self, state: AgentLivenessState, heartbeat: Heartbeat) -> str:
        now = self._clock()
        agent_id = state.agent_id
        if state.is_dead:
            return DEAD

        if heartbeat.nonce is not None and (state.last_nonce is None or heartbeat.nonce > state.last_nonce):
            return await self._record_heartbeat(state, heartbeat, now)

        if heartbeat.nonce is not None and state.last_nonce is not None and heartbeat.nonce < state.last_nonce:
            self.logger.warning(
                f"Nonce went backwards for {agent_id}: {heartbeat.nonce} < {state.last_nonce}, ignoring",
            )

        if now <= state.deadline():
            return OK

        severity = state.severity_for(now)
        overdue_s = (now - state.deadline()) // 1000

        if state.is_alive:
            # Marked missing only once the report exists.
            report = await self._reports.open(agent_id, severity)
            state.is_alive = False
            self.logger.warning(
                f"Missing heartbeat from {agent_id}",
                extra={"log_data": {"report": report.id, "severity": severity, "overdue_s": overdue_s}},
            )
            self._raise_alert(Alert(
                agent_id=agent_id,
                type="missing_heartbeat",
                severity=severity,
                message=(
                    f"Agent {agent_id} missed its heartbeat: {overdue_s}s past deadline "
                    f"(last nonce {state.last_nonce}). Severity: {severity}"
                ),
                timestamp=now,
            ))
            self._publish(RealtimeEvent("status", agent_id, {
                "status": "missing", "severity": severity, "reportId": report.id,
            }, timestamp=now))
            return MISSING

        previous = self._reports.active_for(agent_id)
        previous_severity = previous.severity if previous else None
        report = await self._reports.open(agent_id, severity)
        if report.severity != previous_severity:
            self._raise_alert(Alert(
                agent_id=agent_id,
                type="missing_heartbeat",
                severity=report.severity,
                message=(
                    f"Agent {agent_id} still missing: {overdue_s}s past deadline, "
                    f"seen missing {report.occurrence_count} times. Severity: {report.severity}"
                ),
                timestamp=now,
            ))
        return STILL_MISSING

    async def _record_heartbeat(self, state: AgentLivenessState, heartbeat: Heartbeat, now: int) -> str:
        was_missing = not state.is_alive
        seen = heartbeat.last_seen_at if heartbeat.last_seen_at is not None else now
        seen = min(seen, now)
        state.last_nonce = heartbeat.nonce
        if state.last_seen_at is None or seen > state.last_seen_at:
            state.last_seen_at = seen
        state.is_alive = True

        resolved = await self._reports.resolve_agent(state.agent_id, "heartbeat resumed")
        self._publish(RealtimeEvent("heartbeat", state.agent_id, {
            "nonce": state.last_nonce, "lastSeenAt": state.last_seen_at,
        }, timestamp=now))
        if was_missing:
            self.logger.info(
                f"Agent {state.agent_id} recovered at nonce {state.last_nonce}",
                extra={"log_data": {"resolved_report": resolved.id if resolved else None}},
            )
            self._publish(RealtimeEvent("status", state.agent_id, {"status": "recovered"}, timestamp=now))
        return ALIVE

    async def record_death(self, agent_id: str, reason: str = "reported dead") -> bool:
        """Mark a tracked agent dead. Dead agents are never reported missing."""
        lock = self._locks.get(agent_id)
        if lock is None:
            return False
        async with lock:
            state = self._states.get(agent_id)
            if state is None or state.is_dead:
                return False
            state.is_dead = True
            state.is_alive = False
            await self._reports.resolve_agent(agent_id, f"agent died: {reason}")

        now = self._clock()
        self.logger.warning(f"Agent {agent_id} died: {reason}")
        self._raise_alert(Alert(
            agent_id=agent_id,
            type="death",
            severity="critical",
            message=f"Agent {agent_id} died: {reason}",
            timestamp=now,
        ))
        self._publish(RealtimeEvent("death", agent_id, {"reason": reason}, timestamp=now))
        return True

    # --- status ---

    def get_heartbeat_status(self, agent_id: str) -> dict[str, Any] | None:
        state = self._states.get(agent_id)
        if state is None:
            return None
        now = self._clock()
        deadline = state.deadline()
        return {
            **state.to_dict(),
            "deadline": deadline,
            "time_until_deadline_ms": deadline - now,
            "healthy": state.is_alive and now <= deadline,
        }

    def get_status(self) -> dict[str, dict[str, Any]]:
        return {agent_id: self.get_heartbeat_status(agent_id) for agent_id in list(self._states)}

    def get_alive_agents(self) -> list[str]:
        return [a for a, s in self._states.items() if s.is_alive]

    def get_missing_agents(self) -> list[str]:
        return [a for a, s in self._states.items() if not s.is_alive and not s.is_dead]

    # --- background work ---

    def _raise_alert(self, alert: Alert):
        self._spawn(self._dispatch_alert(alert))

    def _publish(self, event: RealtimeEvent):
        if self._broadcaster:
            self._spawn(self._broadcaster.publish(event))

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _dispatch_alert(self, alert: Alert):
        if self._alerts:
            try:
                await self._alerts.send_alert(alert)
            except Exception as e:
                self.logger.error(f"Alert dispatch for {alert.id} failed: {e!r}")
        for handler in list(self._alert_handlers):
            try:
                result = handler(alert)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Alert handler failed: {e!r}")

    async def drain(self):
        """Wait for alert dispatches and realtime publishes started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def start(self):
        """Run ``poll()`` every ``poll_interval`` seconds until ``stop()``."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._run())
        self.logger.info(f"Heartbeat monitor started ({len(self._states)} agents, every {self._poll_interval}s)")

    async def _run(self):
        while self._running:
            try:
                await self.poll()
            except Exception as e:
                self.logger.error(f"Poll cycle failed: {e!r}")
            try:
                async with asyncio.timeout(self._poll_interval):
                    await self._stop_event.wait()
            except TimeoutError:
                pass

    async def stop(self):
        """Stop the timer after the current poll, then drain pending dispatches."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._loop_task:
            await self._loop_task
            self._loop_task = None
        await self.drain()
        self.logger.info("Heartbeat monitor stopped")
