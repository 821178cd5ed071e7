"""Durable task queue with a bounded worker pool."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any

import aiosqlite

from agentcue import db
from agentcue.cache import TTLCache
from agentcue.errors import InvalidInput, JobTimeoutError, StalledJobError
from agentcue.events import EventChannel, EventKind, QueueEvent, Subscription
from agentcue.files import FileProcessor
from agentcue.models import Job, ProcessedFile, QueueStats, StatusUpdate, TaskData, TaskStatus
from agentcue.monitor import QueueHealthMonitor
from agentcue.policy import (
    TIMEOUT_MESSAGE,
    BackoffPolicy,
    FailureKind,
    calculate_timeout,
    classify_failure,
    should_retry,
)
from agentcue.store import StatusReporter, TaskStore
from agentcue.strategies import StrategyRegistry
from agentcue.worker import Worker

logger = logging.getLogger(__name__)

STALLED_MESSAGE = "job stalled more than allowable limit"

# Retention
COMPLETED_MAX_AGE = 24 * 3600
COMPLETED_KEEP = 100
FAILED_MAX_AGE = 7 * 24 * 3600
PRUNE_INTERVAL = 60.0


class TaskQueue:
    """
    Accepts agent tasks and runs them through the worker pipeline.

    The queue decides WHEN a job runs and what happens after it fails.
    Strategies decide WHAT the agent produces.

    Example:
        queue = TaskQueue("jobs.db", task_store=MemoryTaskStore())

        @queue.registry.strategy("summarizer")
        async def summarize(context, config, progress):
            return {"content": "..."}

        queue.start()
        job_id = await queue.submit({"taskId": "t1", "agentType": "summarizer", "files": [...]})
        await queue.stop()
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        registry: StrategyRegistry | None = None,
        file_processor: FileProcessor | None = None,
        task_store: TaskStore | None = None,
        concurrency: int = 2,
        max_attempts: int = 3,
        backoff: BackoffPolicy | None = None,
        stall_interval_ms: int = 30_000,
        poll_interval: float = 0.01,
        cache: TTLCache[ProcessedFile] | None = None,
        refresh_interval: float = 10.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if stall_interval_ms <= 0:
            raise ValueError("stall_interval_ms must be positive")

        self.db_path = db_path
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy()
        self.stall_interval = stall_interval_ms / 1000
        self.poll_interval = poll_interval

        self.registry = registry or StrategyRegistry()
        self.reporter = StatusReporter(task_store)
        self.cache = cache if cache is not None else TTLCache(max_entries=256, ttl=3600)
        self.worker = Worker(
            registry=self.registry,
            reporter=self.reporter,
            file_processor=file_processor,
            cache=self.cache,
        )
        self.events = EventChannel()
        self.monitor = QueueHealthMonitor(self, refresh_interval=refresh_interval)

        self._conn: aiosqlite.Connection | None = None
        self._conn_lock = asyncio.Lock()
        self._running = False
        self._dispatcher_task: asyncio.Task | None = None
        self._executions: dict[str, asyncio.Task] = {}  # job_id -> task
        self._closed = False

    # --- Storage ---

    async def connection(self) -> aiosqlite.Connection:
        """Open the database on first use."""
        if self._closed:
            raise RuntimeError("TaskQueue is closed")
        async with self._conn_lock:
            if self._conn is None:
                self._conn = await db.init_db(self.db_path)
        return self._conn

    # --- Submission and lookup ---

    async def submit(
        self,
        task_data: TaskData | dict[str, Any],
        *,
        attempts: int | None = None,
        timeout_ms: int | None = None,
    ) -> str:
        """
        Queue a task for processing.

        Args:
            task_data: A `TaskData` or its camelCase dict form.
            attempts: Override the queue's max attempts for this job.
            timeout_ms: Override the computed timeout.

        Returns:
            Job ID.

        Raises:
            InvalidInput: If agentType or files is missing.
        """
        data = self._coerce(task_data)
        if attempts is not None and attempts < 1:
            raise InvalidInput("attempts must be at least 1")

        now = time.time()
        job_id = uuid.uuid4().hex[:12]
        job = Job(
            id=job_id,
            task_id=data.task_id or job_id,
            data=data,
            max_attempts=attempts or self.max_attempts,
            timeout_ms=timeout_ms or calculate_timeout(data.agent_type, data.files),
            backoff_type=self.backoff.type,
            backoff_delay_ms=self.backoff.delay_ms,
            created_at=now,
            available_at=now,
        )
        if not data.task_id:
            data.task_id = job.task_id

        conn = await self.connection()
        await db.insert_job(conn, job)

        self.reporter.push(StatusUpdate(
            task_id=job.task_id,
            status=TaskStatus.QUEUED,
            progress=0,
            message="Queued for processing",
        ))
        self._publish(EventKind.SUBMITTED, job)
        logger.info(
            "Queued %s task %s as job %s (timeout %dms, %d attempts)",
            data.agent_type, job.task_id, job.id, job.timeout_ms, job.max_attempts,
        )
        return job.id

    def _coerce(self, task_data: TaskData | dict[str, Any]) -> TaskData:
        if isinstance(task_data, TaskData):
            data = task_data
        elif isinstance(task_data, dict):
            if not task_data.get("agentType"):
                raise InvalidInput("agentType is required")
            if not isinstance(task_data.get("files"), list):
                raise InvalidInput("files must be a list")
            try:
                data = TaskData.from_dict(task_data)
            except (KeyError, TypeError, ValueError) as e:
                raise InvalidInput(f"Malformed task data: {e}") from e
        else:
            raise InvalidInput(f"Expected TaskData or dict, got {type(task_data).__name__}")

        if not data.agent_type:
            raise InvalidInput("agentType is required")
        if not isinstance(data.files, list):
            raise InvalidInput("files must be a list")
        return data

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        """Snapshot of a job, or None if unknown (or already pruned)."""
        conn = await self.connection()
        job = await db.get_job(conn, job_id)
        return job.snapshot() if job else None

    async def get_stats(self) -> QueueStats:
        conn = await self.connection()
        return await db.count_by_state(conn)

    def subscribe(self, maxsize: int = 1000) -> Subscription:
        """Subscribe to queue events."""
        return self.events.subscribe(maxsize)

    async def get_health(self) -> dict[str, Any]:
        return await self.monitor.get_health()

    async def get_job_stats(self, window_seconds: float = 3600) -> dict[str, Any]:
        return await self.monitor.get_job_stats(window_seconds)

    async def get_dashboard_data(self) -> dict[str, Any]:
        return await self.monitor.get_dashboard_data()

    # --- Lifecycle ---

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """
        Start dispatching jobs.

        Non-blocking - runs as background asyncio tasks.
        """
        if self._running:
            return
        if self._closed:
            raise RuntimeError("TaskQueue is closed")

        self._running = True
        loop = asyncio.get_running_loop()
        self._dispatcher_task = loop.create_task(self._run_dispatcher())
        self.monitor.start()
        logger.info("Task queue started (concurrency=%d)", self.concurrency)

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop dispatching and wait for running jobs.

        Args:
            timeout: Max seconds to wait for running jobs. None = wait forever.
                Jobs still running after the timeout are cancelled and put
                back in the queue.
        """
        was_running = self._running
        self._running = False

        if self._dispatcher_task is not None:
            self._dispatcher_task.cancel()
            try:
                await self._dispatcher_task
            except asyncio.CancelledError:
                pass
            self._dispatcher_task = None

        if self._executions:
            tasks = list(self._executions.values())
            if timeout is not None:
                done, pending = await asyncio.wait(tasks, timeout=timeout)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            else:
                await asyncio.gather(*tasks, return_exceptions=True)
        self._executions.clear()

        await self.monitor.stop()
        await self.reporter.flush(timeout=5.0)
        if was_running:
            logger.info("Task queue stopped")

    async def close(self) -> None:
        """Stop the queue and release the database and status reporter."""
        if self._closed:
            return
        await self.stop()
        await self.reporter.close()
        self.events.close()
        self._closed = True
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> TaskQueue:
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # --- Dispatcher ---

    async def _run_dispatcher(self) -> None:
        """Background loop that claims jobs into free slots."""
        next_sweep = 0.0
        next_prune = 0.0
        while self._running:
            try:
                now = time.time()
                conn = await self.connection()

                if now >= next_sweep:
                    await self._reclaim_stalled(conn, now)
                    next_sweep = now + self.stall_interval / 2
                if now >= next_prune:
                    await self._prune(conn, now)
                    next_prune = now + PRUNE_INTERVAL

                await db.promote_delayed(conn, now)

                while self._running and len(self._executions) < self.concurrency:
                    job = await db.claim_next(
                        conn,
                        lease_token=uuid.uuid4().hex,
                        lease_expires_at=now + self.stall_interval,
                        now=now,
                    )
                    if job is None:
                        break
                    self._executions[job.id] = asyncio.create_task(self._execute(job))
            except Exception:
                logger.exception("Dispatcher iteration failed")

            # Small sleep to avoid busy loop
            await asyncio.sleep(self.poll_interval)

    async def _prune(self, conn: aiosqlite.Connection, now: float) -> None:
        removed = await db.prune_finished(
            conn,
            now=now,
            completed_max_age=COMPLETED_MAX_AGE,
            completed_keep=COMPLETED_KEEP,
            failed_max_age=FAILED_MAX_AGE,
        )
        if removed:
            logger.debug("Pruned %d finished jobs", removed)
        self.cache.evict_expired()

    async def _reclaim_stalled(self, conn: aiosqlite.Connection, now: float) -> None:
        """Take back jobs whose lease expired."""
        for job in await db.find_expired_leases(conn, now):
            # The reclaim below revokes the lease; any local execution is now orphaned
            task = self._executions.pop(job.id, None)
            if task is not None:
                task.cancel()

            if job.attempts >= job.max_attempts:
                if await db.fail_job(conn, job.id, job.lease_token, reason=STALLED_MESSAGE, now=now):
                    error = StalledJobError(STALLED_MESSAGE)
                    logger.error("Job %s (task %s) failed: %s", job.id, job.task_id, error)
                    self._push_failed(job, str(error))
                    self._publish(EventKind.FAILED, job, error=str(error))
                continue

            if await db.requeue_job(conn, job.id, job.lease_token, now=now):
                logger.warning(
                    "Job %s (task %s) stalled on attempt %d/%d, re-queued",
                    job.id, job.task_id, job.attempts, job.max_attempts,
                )
                self.reporter.push(StatusUpdate(
                    task_id=job.task_id,
                    status=TaskStatus.PROCESSING,
                    message="Processing stalled, retrying...",
                ))
                self._publish(EventKind.STALLED, job)

    # --- Execution ---

    async def _execute(self, job: Job) -> None:
        """Run one attempt of a claimed job and record its outcome."""
        conn = await self.connection()
        token = job.lease_token
        started = time.monotonic()
        self._publish(EventKind.ACTIVE, job)

        async def on_progress(progress: int) -> None:
            job.progress = progress
            now = time.time()
            renewed = await db.update_progress(
                conn, job.id, token, progress, expires_at=now + self.stall_interval, now=now
            )
            if not renewed:
                raise StalledJobError(f"Job {job.id} lost its lease")
            self._publish(EventKind.PROGRESS, job, progress=progress)

        heartbeat = asyncio.create_task(self._heartbeat(conn, job))
        try:
            result = await asyncio.wait_for(
                self.worker.process(job, on_progress),
                timeout=job.timeout_ms / 1000,
            )
        except asyncio.CancelledError:
            # Shutdown or reclaim. A reclaimed job no longer holds this lease.
            if await db.requeue_job(conn, job.id, token, now=time.time(), refund_attempt=True):
                logger.info("Job %s interrupted, re-queued", job.id)
            raise
        except asyncio.TimeoutError:
            error = JobTimeoutError(TIMEOUT_MESSAGE)
            await self._handle_failure(conn, job, error, started)
        except Exception as e:
            await self._handle_failure(conn, job, e, started)
        else:
            await self._handle_success(conn, job, result, started)
        finally:
            heartbeat.cancel()
            if self._executions.get(job.id) is asyncio.current_task():
                self._executions.pop(job.id, None)

    async def _heartbeat(self, conn: aiosqlite.Connection, job: Job) -> None:
        """Renew the lease while the job runs."""
        interval = self.stall_interval / 3
        while True:
            await asyncio.sleep(interval)
            now = time.time()
            renewed = await db.extend_lease(
                conn, job.id, job.lease_token, expires_at=now + self.stall_interval, now=now
            )
            if not renewed:
                return

    async def _handle_success(
        self, conn: aiosqlite.Connection, job: Job, result: dict[str, Any], started: float
    ) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        usage = result.get("usage") or {}
        done = await db.complete_job(
            conn,
            job.id,
            job.lease_token,
            result=result,
            tokens_used=int(usage.get("tokensUsed") or 0),
            cost=float(usage.get("cost") or 0.0),
            now=time.time(),
        )
        if not done:
            logger.warning("Job %s finished after losing its lease, result discarded", job.id)
            return
        logger.info("Job %s (task %s) completed in %.0fms", job.id, job.task_id, duration_ms)
        self._publish(EventKind.COMPLETED, job, progress=100, duration_ms=duration_ms, usage=usage)

    async def _handle_failure(
        self, conn: aiosqlite.Connection, job: Job, error: BaseException, started: float
    ) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        kind = classify_failure(error)
        if kind is FailureKind.TIMEOUT:
            reason = TIMEOUT_MESSAGE
        else:
            reason = str(error) or type(error).__name__
        now = time.time()

        if should_retry(kind, job.attempts, job.max_attempts):
            delay_ms = BackoffPolicy(job.backoff_type, job.backoff_delay_ms).delay_for(job.attempts)
            scheduled = await db.schedule_retry(
                conn, job.id, job.lease_token,
                reason=reason, available_at=now + delay_ms / 1000, now=now,
            )
            if not scheduled:
                logger.warning("Job %s failed after losing its lease: %s", job.id, reason)
                return
            logger.warning(
                "Job %s (task %s) attempt %d/%d failed: %s; retrying in %dms",
                job.id, job.task_id, job.attempts, job.max_attempts, reason, delay_ms,
            )
            self.reporter.push(StatusUpdate(
                task_id=job.task_id,
                status=TaskStatus.PROCESSING,
                message=f"Attempt {job.attempts} failed, retrying...",
            ))
            self._publish(EventKind.RETRYING, job, duration_ms=duration_ms, error=reason)
            return

        failed = await db.fail_job(conn, job.id, job.lease_token, reason=reason, now=now)
        if not failed:
            logger.warning("Job %s failed after losing its lease: %s", job.id, reason)
            return
        logger.error(
            "Job %s (task %s) failed after %d attempt(s) [%s]: %s",
            job.id, job.task_id, job.attempts, kind.value, reason,
        )
        self._push_failed(job, reason)
        self._publish(EventKind.FAILED, job, duration_ms=duration_ms, error=reason)

    def _push_failed(self, job: Job, reason: str) -> None:
        self.reporter.push(StatusUpdate(
            task_id=job.task_id,
            status=TaskStatus.FAILED,
            message="Failed",
            error=reason,
        ))

    def _publish(self, kind: EventKind, job: Job, **fields: Any) -> None:
        self.events.publish(QueueEvent(
            kind=kind,
            job_id=job.id,
            task_id=job.task_id,
            agent_type=job.agent_type,
            user_id=job.data.user_id,
            attempt=job.attempts,
            **fields,
        ))
