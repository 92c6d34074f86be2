"""Missing-heartbeat incident reports.

A report tracks one episode of an agent failing to heartbeat on time:

    open -> acknowledged -> resolved
    open -> resolved

Only ``open()`` creates reports, and it reuses the agent's active report
when there is one, so an agent never has two unresolved reports.

Memory is the source of truth. A failed Redis write is logged and the
report stays in memory; it is written again on its next change.
"""

import asyncio
import json
import uuid
from dataclasses import asdict, dataclass
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from heartwatch.shared.clock import now_ms
from heartwatch.shared.errors import InvalidTransition
from heartwatch.shared.logger import get_logger

OPEN = "open"
ACKNOWLEDGED = "acknowledged"
RESOLVED = "resolved"
ACTIVE_STATUSES = (OPEN, ACKNOWLEDGED)

SEVERITY_RANK = {"info": 0, "warning": 1, "critical": 2}

REPORT_PREFIX = "missing_report:"
AGENT_REPORTS_PREFIX = "agent_reports:"
REPORT_TTL_SECONDS = 86400 * 30


@dataclass
class MissingReport:
    agent_id: str
    detected_at: int
    severity: str = "warning"
    status: str = OPEN
    occurrence_count: int = 1
    last_escalated_at: int | None = None
    acknowledged_by: str | None = None
    resolved_at: int | None = None
    resolution: str | None = None
    id: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = f"report-{self.agent_id}-{uuid.uuid4().hex[:8]}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MissingReport":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class MissingReportStore:
    """Owns report lifecycle. Memory first, optional Redis write-through."""

    def __init__(self, redis_url: str | None = None, clock=None):
        self._reports: dict[str, MissingReport] = {}
        self._active: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or now_ms
        self._redis = aioredis.from_url(redis_url) if redis_url else None
        self.logger = get_logger("reports")

    async def open(self, agent_id: str, severity: str = "warning") -> MissingReport:
        """Open a report for ``agent_id`` or bump the one already active."""
        async with self._lock:
            now = self._clock()
            existing = self._active_for(agent_id)
            if existing:
                existing.occurrence_count += 1
                existing.last_escalated_at = now
                if SEVERITY_RANK.get(severity, 0) > SEVERITY_RANK.get(existing.severity, 0):
                    existing.severity = severity
                await self._persist(existing)
                self.logger.info(
                    f"Report {existing.id} re-detected ({existing.occurrence_count}x)",
                    extra={"log_data": {"agent": agent_id, "severity": existing.severity}},
                )
                return existing

            report = MissingReport(agent_id=agent_id, detected_at=now, severity=severity)
            self._reports[report.id] = report
            self._active[agent_id] = report.id
            await self._persist(report)
            self.logger.info(
                f"Missing heartbeat report {report.id} opened",
                extra={"log_data": {"agent": agent_id, "severity": severity}},
            )
            return report

    async def acknowledge(self, report_id: str, acknowledged_by: str = "operator") -> MissingReport | None:
        """Acknowledge a report. Returns None if not found.

        Raises:
            InvalidTransition: If the report is already resolved.
        """
        async with self._lock:
            report = self._reports.get(report_id)
            if report is None:
                return None
            if report.status == RESOLVED:
                raise InvalidTransition(report_id, report.status, ACKNOWLEDGED)
            if report.status == OPEN:
                report.status = ACKNOWLEDGED
                report.acknowledged_by = acknowledged_by
                await self._persist(report)
                self.logger.info(f"Report {report_id} acknowledged by {acknowledged_by}")
            return report

    async def resolve(self, report_id: str, resolution: str = "resolved by operator") -> MissingReport | None:
        """Resolve a report. Resolving twice is a no-op. Returns None if not found."""
        async with self._lock:
            report = self._reports.get(report_id)
            if report is None:
                return None
            await self._resolve(report, resolution)
            return report

    async def resolve_agent(self, agent_id: str, resolution: str) -> MissingReport | None:
        """Resolve whichever report is active for ``agent_id``, if any."""
        async with self._lock:
            report = self._active_for(agent_id)
            if report is None:
                return None
            await self._resolve(report, resolution)
            return report

    async def _resolve(self, report: MissingReport, resolution: str):
        if report.status == RESOLVED:
            return
        report.status = RESOLVED
        report.resolved_at = self._clock()
        report.resolution = resolution
        if self._active.get(report.agent_id) == report.id:
            del self._active[report.agent_id]
        await self._persist(report)
        self.logger.info(f"Report {report.id} resolved: {resolution}")

    def get(self, report_id: str) -> MissingReport | None:
        return self._reports.get(report_id)

    def active_for(self, agent_id: str) -> MissingReport | None:
        return self._active_for(agent_id)

    def _active_for(self, agent_id: str) -> MissingReport | None:
        report_id = self._active.get(agent_id)
        return self._reports.get(report_id) if report_id else None

    def list_active(self) -> list[MissingReport]:
        return self._newest_first(r for r in self._reports.values() if r.is_active)

    def list_by_agent(self, agent_id: str) -> list[MissingReport]:
        return self._newest_first(r for r in self._reports.values() if r.agent_id == agent_id)

    def list_reports(
        self,
        status: str | None = None,
        severity: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[MissingReport], int]:
        """Filtered, newest-first page of reports plus the unpaged total."""
        reports = list(self._reports.values())
        if status:
            reports = [r for r in reports if r.status == status]
        if severity:
            reports = [r for r in reports if r.severity == severity]
        reports = self._newest_first(reports)
        return reports[offset:offset + limit], len(reports)

    def get_statistics(self) -> dict[str, Any]:
        by_severity: dict[str, int] = {}
        by_status: dict[str, int] = {}
        for report in self._reports.values():
            by_severity[report.severity] = by_severity.get(report.severity, 0) + 1
            by_status[report.status] = by_status.get(report.status, 0) + 1
        return {
            "total": len(self._reports),
            "by_severity": by_severity,
            "by_status": by_status,
            "unresolved": by_status.get(OPEN, 0) + by_status.get(ACKNOWLEDGED, 0),
            "unacknowledged": by_status.get(OPEN, 0),
        }

    async def cleanup(self, days_to_keep: int = 30) -> int:
        """Delete resolved reports older than ``days_to_keep``. Returns count removed."""
        cutoff = self._clock() - days_to_keep * 24 * 60 * 60 * 1000
        async with self._lock:
            stale = [
                r for r in self._reports.values()
                if r.status == RESOLVED and r.resolved_at is not None and r.resolved_at < cutoff
            ]
            for report in stale:
                del self._reports[report.id]
                await self._forget(report)
        self.logger.info(f"Cleaned up {len(stale)} resolved reports older than {days_to_keep} days")
        return len(stale)

    async def load(self) -> int:
        """Restore reports persisted in Redis. Returns count loaded."""
        if not self._redis:
            return 0
        loaded = 0
        async with self._lock:
            async for key in self._redis.scan_iter(match=f"{REPORT_PREFIX}*"):
                raw = await self._redis.get(key)
                if not raw:
                    continue
                report = MissingReport.from_dict(json.loads(raw))
                self._reports[report.id] = report
                if report.is_active:
                    self._active[report.agent_id] = report.id
                loaded += 1
        self.logger.info(f"Loaded {loaded} reports from Redis")
        return loaded

    async def close(self):
        # Taking the lock lets a write in progress finish first.
        async with self._lock:
            if self._redis:
                await self._redis.aclose()
                self._redis = None

    async def _persist(self, report: MissingReport):
        if not self._redis:
            return
        pipe = self._redis.pipeline()
        pipe.setex(f"{REPORT_PREFIX}{report.id}", REPORT_TTL_SECONDS, json.dumps(report.to_dict()))
        pipe.sadd(f"{AGENT_REPORTS_PREFIX}{report.agent_id}", report.id)
        try:
            await pipe.execute()
        except (RedisError, OSError) as e:
            self.logger.error(
                f"Persisting report {report.id} failed: {e}",
                extra={"log_data": {"agent": report.agent_id, "status": report.status}},
            )

    async def _forget(self, report: MissingReport):
        if not self._redis:
            return
        try:
            await self._redis.delete(f"{REPORT_PREFIX}{report.id}")
            await self._redis.srem(f"{AGENT_REPORTS_PREFIX}{report.agent_id}", report.id)
        except (RedisError, OSError) as e:
            self.logger.error(f"Deleting report {report.id} from Redis failed: {e}")

    @staticmethod
    def _newest_first(reports) -> list[MissingReport]:
        return sorted(reports, key=lambda r: r.detected_at, reverse=True)
