"""Tests for the heartbeat monitor: detection, recovery, escalation, concurrency."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from heartwatch.alerts.manager import AlertManager
from heartwatch.monitor.heartbeat import (
    ALIVE,
    DEAD,
    INCONCLUSIVE,
    MISSING,
    OK,
    STILL_MISSING,
    UNTRACKED,
    AgentLivenessState,
    HeartbeatMonitor,
)
from heartwatch.monitor.reports import OPEN, RESOLVED, MissingReportStore
from heartwatch.monitor.source import Heartbeat
from heartwatch.realtime.broadcaster import RealtimeBroadcaster
from heartwatch.shared.errors import TransientSourceError

HOUR_MS = 3_600_000


class FakeClock:
    def __init__(self, now: int = 0):
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeSource:
    """Returns whatever heartbeat the test last set for an agent."""

    def __init__(self):
        self.heartbeats: dict[str, Heartbeat] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    def beat(self, agent_id: str, nonce: int, last_seen_at: int | None = None):
        self.heartbeats[agent_id] = Heartbeat(last_seen_at=last_seen_at, nonce=nonce)

    async def get_heartbeat(self, agent_id: str) -> Heartbeat:
        self.calls.append(agent_id)
        if agent_id in self.errors:
            raise self.errors[agent_id]
        return self.heartbeats.get(agent_id, Heartbeat(None, None))


class GatedSource(FakeSource):
    """Blocks every fetch until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def get_heartbeat(self, agent_id: str) -> Heartbeat:
        self.entered.set()
        await self.release.wait()
        return await super().get_heartbeat(agent_id)


class CountingSource(FakeSource):
    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def get_heartbeat(self, agent_id: str) -> Heartbeat:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return await super().get_heartbeat(agent_id)


class FakeConnection:
    def __init__(self):
        self.sent: list[dict] = []
        self.closed = False

    async def send_json(self, data):
        self.sent.append(data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def reports(clock):
    return MissingReportStore(clock=clock)


@pytest.fixture
def alerts(clock):
    return AlertManager(channels=[], clock=clock)


def _monitor(source, reports, alerts=None, clock=None, **kwargs):
    monitor = HeartbeatMonitor(source=source, reports=reports, alerts=alerts, clock=clock, **kwargs)
    raised = []
    monitor.on_alert(raised.append)
    return monitor, raised


# --- AgentLivenessState ---


def test_state_rejects_bad_cadence():
    with pytest.raises(ValueError):
        AgentLivenessState("0xAA", expected_interval_ms=0)
    with pytest.raises(ValueError):
        AgentLivenessState("0xAA", grace_multiplier=0.5)


def test_state_deadline_and_severity():
    state = AgentLivenessState("0xAA", expected_interval_ms=HOUR_MS, grace_multiplier=1.5, last_seen_at=0)
    assert state.deadline() == 5_400_000
    assert state.severity_for(5_400_001) == "warning"
    assert state.severity_for(5_400_000 + 2 * HOUR_MS) == "warning"
    assert state.severity_for(5_400_001 + 2 * HOUR_MS) == "critical"


def test_state_deadline_falls_back_to_registration():
    state = AgentLivenessState("0xAA", expected_interval_ms=HOUR_MS, registered_at=1_000)
    assert state.deadline() == 1_000 + 5_400_000


# --- detection and recovery ---


@pytest.mark.asyncio
async def test_missing_then_recovered_scenario(clock, source, reports, alerts):
    monitor, raised = _monitor(source, reports, alerts, clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, grace_multiplier=1.5, last_seen_at=0, last_nonce=10)
    source.beat("0xAA", 10, last_seen_at=0)

    clock.now = 5_400_001
    assert await monitor.check_agent("0xAA") == MISSING
    await monitor.drain()

    state = monitor.get_state("0xAA")
    assert state.is_alive is False
    active = reports.list_active()
    assert len(active) == 1
    assert active[0].status == OPEN
    assert active[0].agent_id == "0xAA"
    assert len(raised) == 1
    assert raised[0].severity == "warning"
    assert raised[0].type == "missing_heartbeat"
    assert len(alerts.get_alert_history()) == 1

    clock.now = 6_000_000
    source.beat("0xAA", 11, last_seen_at=6_000_000)
    assert await monitor.check_agent("0xAA") == ALIVE
    await monitor.drain()

    assert state.is_alive is True
    assert state.last_seen_at == 6_000_000
    assert state.last_nonce == 11
    assert reports.list_active() == []
    assert reports.get(active[0].id).status == RESOLVED
    assert len(raised) == 1


@pytest.mark.asyncio
async def test_exactly_at_deadline_is_not_missing(clock, source, reports):
    monitor, raised = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, grace_multiplier=1.5, last_seen_at=0, last_nonce=10)
    source.beat("0xAA", 10, last_seen_at=0)

    clock.now = 5_400_000
    assert await monitor.check_agent("0xAA") == OK
    await monitor.drain()
    assert reports.list_active() == []
    assert raised == []


@pytest.mark.asyncio
async def test_never_seen_agent_gets_registration_grace(clock, source, reports):
    clock.now = 1_000
    monitor, raised = _monitor(source, reports, clock=clock)
    monitor.track("0xBB", expected_interval_ms=HOUR_MS, grace_multiplier=1.5)

    clock.now = 1_000 + 5_400_000
    assert await monitor.check_agent("0xBB") == OK
    clock.now += 1
    assert await monitor.check_agent("0xBB") == MISSING
    await monitor.drain()
    assert len(raised) == 1


@pytest.mark.asyncio
async def test_first_heartbeat_counts_as_alive(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS)
    clock.now = 500
    source.beat("0xAA", 1, last_seen_at=400)

    assert await monitor.check_agent("0xAA") == ALIVE
    assert monitor.get_state("0xAA").last_seen_at == 400


@pytest.mark.asyncio
async def test_future_timestamp_is_clamped_to_now(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=1)
    clock.now = 1_000
    source.beat("0xAA", 2, last_seen_at=99_999_999)

    assert await monitor.check_agent("0xAA") == ALIVE
    assert monitor.get_state("0xAA").last_seen_at == 1_000


@pytest.mark.asyncio
async def test_last_seen_never_moves_backwards(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=5_000, last_nonce=1)
    clock.now = 6_000
    source.beat("0xAA", 2, last_seen_at=4_000)

    assert await monitor.check_agent("0xAA") == ALIVE
    state = monitor.get_state("0xAA")
    assert state.last_nonce == 2
    assert state.last_seen_at == 5_000


@pytest.mark.asyncio
async def test_far_overdue_agent_is_critical(clock, source, reports):
    monitor, raised = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)
    source.beat("0xAA", 10, last_seen_at=0)

    clock.now = 5_400_001 + 2 * HOUR_MS
    assert await monitor.check_agent("0xAA") == MISSING
    await monitor.drain()
    assert raised[0].severity == "critical"
    assert reports.list_active()[0].severity == "critical"


@pytest.mark.asyncio
async def test_still_missing_bumps_count_without_realerting(clock, source, reports):
    monitor, raised = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)
    source.beat("0xAA", 10, last_seen_at=0)

    clock.now = 5_400_001
    assert await monitor.check_agent("0xAA") == MISSING
    clock.now = 6_000_000
    assert await monitor.check_agent("0xAA") == STILL_MISSING
    clock.now = 7_000_000
    assert await monitor.check_agent("0xAA") == STILL_MISSING
    await monitor.drain()

    active = reports.list_active()
    assert len(active) == 1
    assert active[0].occurrence_count == 3
    assert active[0].last_escalated_at == 7_000_000
    assert len(raised) == 1


@pytest.mark.asyncio
async def test_escalation_to_critical_raises_new_alert(clock, source, reports, alerts):
    monitor, raised = _monitor(source, reports, alerts, clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)
    source.beat("0xAA", 10, last_seen_at=0)

    clock.now = 5_400_001
    await monitor.check_agent("0xAA")
    clock.now = 5_400_001 + 2 * HOUR_MS
    assert await monitor.check_agent("0xAA") == STILL_MISSING
    await monitor.drain()

    assert [a.severity for a in raised] == ["warning", "critical"]
    assert reports.list_active()[0].severity == "critical"
    assert len(reports.list_active()) == 1
    # Past the cooldown window, so both went through the manager.
    assert len(alerts.get_alert_history()) == 2


@pytest.mark.asyncio
async def test_lower_nonce_is_ignored(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)
    clock.now = 1_000
    source.beat("0xAA", 9, last_seen_at=1_000)

    assert await monitor.check_agent("0xAA") == OK
    state = monitor.get_state("0xAA")
    assert state.last_nonce == 10
    assert state.last_seen_at == 0


@pytest.mark.asyncio
async def test_repeated_nonce_is_not_a_heartbeat(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)
    source.beat("0xAA", 10, last_seen_at=5_000_000)

    clock.now = 5_400_001
    assert await monitor.check_agent("0xAA") == MISSING


# --- source failures ---


@pytest.mark.asyncio
async def test_transient_source_error_is_inconclusive(clock, source, reports):
    monitor, raised = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)
    source.errors["0xAA"] = TransientSourceError("0xAA", "rpc timeout")

    clock.now = 10 * HOUR_MS
    assert await monitor.check_agent("0xAA") == INCONCLUSIVE
    await monitor.drain()

    assert monitor.get_state("0xAA").is_alive is True
    assert reports.list_active() == []
    assert raised == []


@pytest.mark.asyncio
async def test_unexpected_source_error_is_inconclusive(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0)
    source.errors["0xAA"] = RuntimeError("boom")

    clock.now = 10 * HOUR_MS
    assert await monitor.check_agent("0xAA") == INCONCLUSIVE
    assert reports.list_active() == []


@pytest.mark.asyncio
async def test_poll_isolates_failing_agents(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=1)
    monitor.track("0xBB", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=1)
    monitor.track("0xCC", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=1)
    source.errors["0xAA"] = TransientSourceError("0xAA", "down")
    source.beat("0xBB", 2)

    clock.now = 5_400_001
    results = await monitor.poll()
    await monitor.drain()

    assert results == {"0xAA": INCONCLUSIVE, "0xBB": ALIVE, "0xCC": MISSING}
    assert monitor.get_missing_agents() == ["0xCC"]
    assert sorted(monitor.get_alive_agents()) == ["0xAA", "0xBB"]


# --- tracking ---


@pytest.mark.asyncio
async def test_untrack_during_fetch_discards_result(clock, reports):
    source = GatedSource()
    monitor, raised = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)
    clock.now = 10 * HOUR_MS

    check = asyncio.create_task(monitor.check_agent("0xAA"))
    await source.entered.wait()
    assert await monitor.untrack("0xAA") is True
    source.release.set()

    assert await check == UNTRACKED
    await monitor.drain()
    assert reports.list_active() == []
    assert raised == []
    assert monitor.tracked_agents() == []


@pytest.mark.asyncio
async def test_untrack_unknown_agent(source, reports):
    monitor, _ = _monitor(source, reports)
    assert await monitor.untrack("0xZZ") is False
    assert await monitor.check_agent("0xZZ") == UNTRACKED


@pytest.mark.asyncio
async def test_retrack_keeps_history_and_updates_cadence(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock)
    first = monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=5)
    again = monitor.track("0xAA", expected_interval_ms=2 * HOUR_MS)

    assert again is first
    assert again.last_nonce == 5
    assert again.expected_interval_ms == 2 * HOUR_MS


@pytest.mark.asyncio
async def test_defaults_apply_to_new_agents(clock, source, reports):
    monitor, _ = _monitor(
        source, reports, clock=clock,
        default_expected_interval_ms=60_000, default_grace_multiplier=2.0,
    )
    state = monitor.track("0xAA")
    assert state.expected_interval_ms == 60_000
    assert state.grace_multiplier == 2.0


# --- death ---


@pytest.mark.asyncio
async def test_record_death_resolves_and_alerts(clock, source, reports):
    monitor, raised = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)
    clock.now = 5_400_001
    await monitor.check_agent("0xAA")

    assert await monitor.record_death("0xAA", "balance exhausted") is True
    assert await monitor.record_death("0xAA", "again") is False
    await monitor.drain()

    assert reports.list_active() == []
    assert [a.type for a in raised] == ["missing_heartbeat", "death"]
    assert raised[1].severity == "critical"
    assert monitor.get_missing_agents() == []

    clock.now = 100 * HOUR_MS
    assert await monitor.check_agent("0xAA") == DEAD
    assert reports.list_active() == []


@pytest.mark.asyncio
async def test_record_death_for_unknown_agent(source, reports):
    monitor, raised = _monitor(source, reports)
    assert await monitor.record_death("0xZZ") is False
    await monitor.drain()
    assert raised == []


# --- realtime events and handlers ---


@pytest.mark.asyncio
async def test_events_published_to_broadcaster(clock, source, reports):
    broadcaster = RealtimeBroadcaster()
    conn = FakeConnection()
    broadcaster.subscribe(conn, "0xAA")
    monitor, _ = _monitor(source, reports, clock=clock, broadcaster=broadcaster)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)

    clock.now = 5_400_001
    await monitor.check_agent("0xAA")
    await monitor.drain()
    clock.now = 6_000_000
    source.beat("0xAA", 11, last_seen_at=6_000_000)
    await monitor.check_agent("0xAA")
    await monitor.drain()

    types = [(e["type"], e["payload"].get("status")) for e in conn.sent]
    assert types[0] == ("status", "missing")
    assert ("heartbeat", None) in types
    assert ("status", "recovered") in types
    heartbeat = next(e for e in conn.sent if e["type"] == "heartbeat")
    assert heartbeat["payload"] == {"nonce": 11, "lastSeenAt": 6_000_000}


@pytest.mark.asyncio
async def test_async_and_failing_handlers(clock, source, reports):
    monitor, raised = _monitor(source, reports, clock=clock)
    seen = []

    async def async_handler(alert):
        seen.append(alert.agent_id)

    def broken_handler(alert):
        raise RuntimeError("handler bug")

    monitor.on_alert(broken_handler)
    monitor.on_alert(async_handler)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0)

    clock.now = 5_400_001
    await monitor.check_agent("0xAA")
    await monitor.drain()

    assert len(raised) == 1
    assert seen == ["0xAA"]


# --- status views ---


@pytest.mark.asyncio
async def test_heartbeat_status_view(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=1)
    clock.now = 400_000

    status = monitor.get_heartbeat_status("0xAA")
    assert status["deadline"] == 5_400_000
    assert status["time_until_deadline_ms"] == 5_000_000
    assert status["healthy"] is True
    assert monitor.get_heartbeat_status("0xZZ") is None
    assert list(monitor.get_status()) == ["0xAA"]


# --- concurrency and lifecycle ---


@pytest.mark.asyncio
async def test_poll_respects_concurrency_bound(clock, reports):
    source = CountingSource()
    monitor, _ = _monitor(source, reports, clock=clock, max_concurrency=2)
    for i in range(6):
        monitor.track(f"0x{i:02X}", expected_interval_ms=HOUR_MS)

    results = await monitor.poll()

    assert len(results) == 6
    assert source.peak <= 2
    assert len(source.calls) == 6


@pytest.mark.asyncio
async def test_start_polls_and_stop_waits(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock, poll_interval=60)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS)

    await monitor.start()
    for _ in range(20):
        if source.calls:
            break
        await asyncio.sleep(0.01)
    await asyncio.wait_for(monitor.stop(), timeout=2)

    assert source.calls == ["0xAA"]
    await monitor.stop()


@pytest.mark.asyncio
async def test_timer_repeats_polls(clock, source, reports):
    monitor, _ = _monitor(source, reports, clock=clock, poll_interval=0.01)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS)

    await monitor.start()
    await asyncio.sleep(0.1)
    await monitor.stop()

    calls = len(source.calls)
    assert calls >= 2
    await asyncio.sleep(0.03)
    assert len(source.calls) == calls


class FlakyReports(MissingReportStore):
    """Fails the first ``open`` call, then behaves normally."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.failures = 1

    async def open(self, agent_id: str, severity: str = "warning"):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("report store unavailable")
        return await super().open(agent_id, severity)


@pytest.mark.asyncio
async def test_failed_report_open_is_retried_as_first_detection(clock, source):
    reports = FlakyReports(clock)
    monitor, raised = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)

    clock.now = 5_400_001
    assert await monitor.poll() == {"0xAA": INCONCLUSIVE}
    assert monitor.get_state("0xAA").is_alive is True

    clock.now = 5_500_000
    assert await monitor.poll() == {"0xAA": MISSING}
    await monitor.drain()

    assert len(raised) == 1
    assert raised[0].type == "missing_heartbeat"
    assert len(reports.list_active()) == 1
    assert reports.list_active()[0].occurrence_count == 1


@pytest.mark.asyncio
async def test_redis_outage_does_not_swallow_missing_alert(clock, source):
    redis = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(side_effect=RedisConnectionError("Connection reset by peer"))
    redis.pipeline.return_value = pipe
    with patch("heartwatch.monitor.reports.aioredis.from_url", return_value=redis):
        reports = MissingReportStore(redis_url="redis://localhost:6379", clock=clock)
    monitor, raised = _monitor(source, reports, clock=clock)
    monitor.track("0xAA", expected_interval_ms=HOUR_MS, last_seen_at=0, last_nonce=10)

    clock.now = 5_400_001
    assert await monitor.poll() == {"0xAA": MISSING}
    await monitor.drain()

    assert len(raised) == 1
    assert monitor.get_state("0xAA").is_alive is False


@pytest.mark.asyncio
async def test_retrack_rejects_bad_cadence(source, reports):
    monitor, _ = _monitor(source, reports)
    state = monitor.track("0xAA", expected_interval_ms=HOUR_MS, grace_multiplier=1.5)

    with pytest.raises(ValueError):
        monitor.track("0xAA", grace_multiplier=0.5)
    with pytest.raises(ValueError):
        monitor.track("0xAA", expected_interval_ms=0)

    assert state.expected_interval_ms == HOUR_MS
    assert state.grace_multiplier == 1.5


def test_track_rejects_zero_interval(source, reports):
    monitor, _ = _monitor(source, reports)
    with pytest.raises(ValueError):
        monitor.track("0xAA", expected_interval_ms=0)
    assert monitor.tracked_agents() == []
