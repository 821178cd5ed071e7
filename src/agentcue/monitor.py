"""Queue health monitor.

Consumes the queue's event stream and periodically samples backend counts
to derive health, throughput and job statistics.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from agentcue import db
from agentcue.events import EventKind, QueueEvent, Subscription

if TYPE_CHECKING:
    from agentcue.queue import TaskQueue

logger = logging.getLogger(__name__)

THROUGHPUT_WINDOW = 600.0  # Seconds of throughput samples kept
FAILURE_RATE_THRESHOLD = 0.1
BACKLOG_THRESHOLD = 100
SLOW_PROCESSING_MS = 300_000

HOUR = 3600
DAY = 24 * HOUR


@dataclass
class QueueMetrics:
    """Live counters. `failed` counts terminal failures observed by this monitor."""

    processed: int = 0
    failed: int = 0
    retried: int = 0
    stalled: int = 0
    waiting: int = 0
    active: int = 0
    completed: int = 0
    delayed: int = 0
    failed_total: int = 0  # Failed jobs still held by the backend
    average_processing_time: float = 0.0  # ms
    throughput: list[dict[str, float]] = field(default_factory=list)

    def record_duration(self, duration_ms: float) -> None:
        """Fold a completed job into the running average. Call after `processed` is bumped."""
        n = self.processed
        if n <= 0:
            return
        self.average_processing_time = (self.average_processing_time * (n - 1) + duration_ms) / n

    def jobs_per_minute(self) -> float:
        if len(self.throughput) < 2:
            return 0.0
        first, last = self.throughput[0], self.throughput[-1]
        elapsed = last["time"] - first["time"]
        if elapsed <= 0:
            return 0.0
        return (last["count"] - first["count"]) / elapsed * 60

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["averageProcessingTime"] = data.pop("average_processing_time")
        data["failedTotal"] = data.pop("failed_total")
        data["jobsPerMinute"] = round(self.jobs_per_minute(), 2)
        return data


@dataclass
class HealthReport:
    status: str
    warnings: list[str]
    metrics: dict[str, Any]
    timestamp: float

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def derive_health(metrics: QueueMetrics) -> tuple[str, list[str]]:
    """Health status and warnings for a metrics snapshot."""
    warnings = []
    if metrics.failed > metrics.processed * FAILURE_RATE_THRESHOLD:
        warnings.append("high failure rate")
    if metrics.waiting > BACKLOG_THRESHOLD:
        warnings.append("large queue backlog")
    if metrics.average_processing_time > SLOW_PROCESSING_MS:
        warnings.append("slow processing")
    return ("warning" if warnings else "healthy"), warnings


class QueueHealthMonitor:
    """
    Health and throughput telemetry for a `TaskQueue`.

    Started and stopped with the queue. Counters only see events published
    while the monitor is running.
    """

    def __init__(self, queue: TaskQueue, *, refresh_interval: float = 10.0) -> None:
        self.queue = queue
        self.refresh_interval = refresh_interval
        self.metrics = QueueMetrics()
        self._subscription: Subscription | None = None
        self._consumer_task: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._consumer_task is not None

    def start(self) -> None:
        if self.running:
            return
        self._subscription = self.queue.subscribe()
        loop = asyncio.get_running_loop()
        self._consumer_task = loop.create_task(self._consume(self._subscription))
        self._refresh_task = loop.create_task(self._refresh_loop())

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        for task in (self._refresh_task, self._consumer_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._consumer_task = None
        self._refresh_task = None

    async def _consume(self, subscription: Subscription) -> None:
        async for event in subscription:
            self.observe(event)

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh()
            except Exception:
                logger.exception("Queue metrics refresh failed")

    def observe(self, event: QueueEvent) -> None:
        """Fold one queue event into the counters."""
        if event.kind is EventKind.COMPLETED:
            self.metrics.processed += 1
            if event.duration_ms is not None:
                self.metrics.record_duration(event.duration_ms)
        elif event.kind is EventKind.FAILED:
            self.metrics.failed += 1
        elif event.kind is EventKind.RETRYING:
            self.metrics.retried += 1
        elif event.kind is EventKind.STALLED:
            self.metrics.stalled += 1

    async def refresh(self) -> QueueMetrics:
        """Pull backend counts and append a throughput sample."""
        stats = await self.queue.get_stats()
        self.metrics.waiting = stats.waiting
        self.metrics.active = stats.active
        self.metrics.completed = stats.completed
        self.metrics.delayed = stats.delayed
        self.metrics.failed_total = stats.failed

        now = time.time()
        self.metrics.throughput.append({"time": now, "count": self.metrics.processed})
        self.metrics.throughput = [
            sample for sample in self.metrics.throughput
            if now - sample["time"] < THROUGHPUT_WINDOW
        ]
        return self.metrics

    async def get_health(self) -> dict[str, Any]:
        await self.refresh()
        status, warnings = derive_health(self.metrics)
        return HealthReport(
            status=status,
            warnings=warnings,
            metrics=self.metrics.as_dict(),
            timestamp=time.time(),
        ).as_dict()

    async def get_job_stats(self, window_seconds: float = HOUR) -> dict[str, Any]:
        """Aggregate statistics over jobs that finished within the window."""
        conn = await self.queue.connection()
        jobs = await db.list_finished_since(conn, time.time() - window_seconds)

        stats: dict[str, Any] = {
            "total": len(jobs),
            "successful": 0,
            "failed": 0,
            "byAgentType": {},
            "byUser": {},
            "totalTokens": 0,
            "averageTokens": 0,
            "totalCost": 0.0,
        }
        for job in jobs:
            if job["state"] == "completed":
                stats["successful"] += 1
            else:
                stats["failed"] += 1
            agent_type = job["agent_type"]
            user = job["user_id"] or ""
            stats["byAgentType"][agent_type] = stats["byAgentType"].get(agent_type, 0) + 1
            stats["byUser"][user] = stats["byUser"].get(user, 0) + 1
            stats["totalTokens"] += job["tokens_used"] or 0
            stats["totalCost"] += job["cost"] or 0.0

        if jobs:
            stats["averageTokens"] = round(stats["totalTokens"] / len(jobs))
        stats["totalCost"] = round(stats["totalCost"], 2)
        return stats

    async def get_dashboard_data(self) -> dict[str, Any]:
        health = await self.get_health()
        hourly = await self.get_job_stats(HOUR)
        daily = await self.get_job_stats(DAY)
        return {
            "health": health,
            "stats": {"hourly": hourly, "daily": daily},
            "timestamp": time.time(),
        }
