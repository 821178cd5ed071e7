"""Task queue lifecycle, retries and recovery."""

import asyncio
import random
import time

import pytest

from agentcue import db
from agentcue.errors import InvalidInput
from agentcue.events import EventKind
from agentcue.models import StrategyResult, TaskData, TaskStatus
from agentcue.policy import TIMEOUT_MESSAGE, BackoffPolicy, calculate_timeout
from agentcue.queue import STALLED_MESSAGE, TaskQueue
from agentcue.store import MemoryTaskStore
from agentcue.strategies import StrategyRegistry

TERMINAL = ("completed", "failed")


def task(task_id="t1", agent_type="note-taker", **extra):
    data = {
        "taskId": task_id,
        "agentType": agent_type,
        "userId": "u1",
        "files": [{"fileId": "f1", "fileName": "a.txt", "size": 12, "content": "Hello there."}],
    }
    data.update(extra)
    return data


def make_queue(store=None, **kwargs):
    kwargs.setdefault("concurrency", 2)
    kwargs.setdefault("backoff", BackoffPolicy("fixed", 10))
    return TaskQueue(
        kwargs.pop("db_path", ":memory:"),
        registry=StrategyRegistry(placeholder_delay=0),
        task_store=store,
        **kwargs,
    )


async def wait_for_job(queue, job_id, states=TERMINAL, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = await queue.get_job(job_id)
        if job is not None and job["state"] in states:
            return job
        await asyncio.sleep(0.01)
    raise AssertionError(f"job {job_id} never reached {states}")


async def eventually(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition never became true")
        await asyncio.sleep(0.01)


@pytest.fixture
async def store():
    return MemoryTaskStore()


@pytest.fixture
async def queue(store):
    q = make_queue(store)
    yield q
    await q.close()


class TestSubmit:
    """Submission validation and the initial job record."""

    def test_constructor_validates(self):
        with pytest.raises(ValueError):
            TaskQueue(concurrency=0)
        with pytest.raises(ValueError):
            TaskQueue(max_attempts=0)
        with pytest.raises(ValueError):
            TaskQueue(stall_interval_ms=0)

    async def test_rejects_malformed_tasks(self, queue):
        with pytest.raises(InvalidInput, match="agentType"):
            await queue.submit({"taskId": "t1", "files": []})
        with pytest.raises(InvalidInput, match="files"):
            await queue.submit({"taskId": "t1", "agentType": "note-taker", "files": "a.txt"})
        with pytest.raises(InvalidInput):
            await queue.submit("note-taker")
        with pytest.raises(InvalidInput):
            await queue.submit(task(), attempts=0)

        stats = await queue.get_stats()
        assert stats.waiting == 0

    async def test_job_snapshot(self, queue):
        job_id = await queue.submit(task())
        job = await queue.get_job(job_id)

        expected_timeout = calculate_timeout("note-taker", TaskData.from_dict(task()).files)
        assert job["id"] == job_id
        assert job["taskId"] == "t1"
        assert job["state"] == "waiting"
        assert job["attempts"] == 0
        assert job["maxAttempts"] == 3
        assert job["timeoutMs"] == expected_timeout
        assert job["data"]["agentType"] == "note-taker"
        assert job["result"] is None

    async def test_task_id_defaults_to_job_id(self, queue):
        job_id = await queue.submit({"agentType": "researcher", "files": []})
        job = await queue.get_job(job_id)
        assert job["taskId"] == job_id

    async def test_overrides(self, queue):
        job_id = await queue.submit(task(), attempts=5, timeout_ms=1234)
        job = await queue.get_job(job_id)
        assert job["maxAttempts"] == 5
        assert job["timeoutMs"] == 1234

    async def test_queued_status_pushed(self, queue, store):
        await queue.submit(task())
        await queue.reporter.flush(1.0)

        record = store.get("t1")
        assert record.status is TaskStatus.QUEUED
        assert record.progress == 0
        assert record.message == "Queued for processing"

    async def test_unknown_job(self, queue):
        assert await queue.get_job("missing") is None


class TestEndToEnd:
    """Jobs run through the worker pipeline."""

    async def test_job_completes(self, queue, store):
        queue.start()
        job_id = await queue.submit(task())
        job = await wait_for_job(queue, job_id)
        await queue.reporter.flush(1.0)

        assert job["state"] == "completed"
        assert job["attempts"] == 1
        assert job["progress"] == 100
        assert job["result"]["status"] == "completed"
        assert job["completedAt"] is not None

        record = store.get("t1")
        assert record.statuses == [TaskStatus.QUEUED, TaskStatus.PROCESSING, TaskStatus.COMPLETED]
        assert record.progress == 100
        progress = [u.progress for u in record.history if u.progress is not None]
        assert progress == sorted(progress)

    async def test_unregistered_agent_uses_placeholder(self, queue):
        queue.start()
        job_id = await queue.submit(task(agent_type="quiz-master"))
        job = await wait_for_job(queue, job_id)

        assert job["state"] == "completed"
        assert job["result"]["result"]["metadata"]["placeholder"] is True

    async def test_registered_strategy_result(self, queue):
        @queue.registry.strategy("note-taker")
        async def notes(context, config, progress):
            await progress(100)
            return StrategyResult(content="# Notes", tokens_used=42, cost=0.5, model="test")

        queue.start()
        job_id = await queue.submit(task())
        job = await wait_for_job(queue, job_id)

        assert job["result"]["result"]["content"] == "# Notes"
        assert job["result"]["usage"]["tokensUsed"] == 42
        assert job["result"]["usage"]["model"] == "test"


class TestFailures:
    """Retry and terminal failure handling."""

    async def test_transient_failure_exhausts_attempts(self, queue, store):
        calls = []

        @queue.registry.strategy("note-taker")
        async def broken(context, config, progress):
            calls.append(1)
            raise RuntimeError("upstream 503")

        queue.start()
        job_id = await queue.submit(task())
        job = await wait_for_job(queue, job_id)
        await queue.reporter.flush(1.0)

        assert job["state"] == "failed"
        assert job["attempts"] == 3
        assert len(calls) == 3
        assert "upstream 503" in job["failedReason"]

        record = store.get("t1")
        assert record.statuses == [TaskStatus.QUEUED, TaskStatus.PROCESSING, TaskStatus.FAILED]
        assert "upstream 503" in record.error
        messages = [u.message for u in record.history]
        assert "Attempt 1 failed, retrying..." in messages
        assert "Attempt 2 failed, retrying..." in messages

    async def test_retry_then_succeed(self, queue):
        calls = []

        @queue.registry.strategy("note-taker")
        async def flaky(context, config, progress):
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("connection reset")
            return StrategyResult(content="ok")

        queue.start()
        job_id = await queue.submit(task())
        job = await wait_for_job(queue, job_id)

        assert job["state"] == "completed"
        assert job["attempts"] == 2

    async def test_attempts_override(self, queue):
        calls = []

        @queue.registry.strategy("note-taker")
        async def broken(context, config, progress):
            calls.append(1)
            raise RuntimeError("nope")

        queue.start()
        job_id = await queue.submit(task(), attempts=1)
        job = await wait_for_job(queue, job_id)

        assert job["state"] == "failed"
        assert len(calls) == 1

    async def test_timeout_is_not_retried(self, queue, store):
        calls = []

        @queue.registry.strategy("note-taker")
        async def slow(context, config, progress):
            calls.append(1)
            await asyncio.sleep(5)
            return StrategyResult(content="late")

        queue.start()
        job_id = await queue.submit(task(), timeout_ms=50)
        job = await wait_for_job(queue, job_id)
        await queue.reporter.flush(1.0)

        assert job["state"] == "failed"
        assert job["attempts"] == 1
        assert job["failedReason"] == TIMEOUT_MESSAGE
        assert len(calls) == 1
        assert store.get("t1").error == TIMEOUT_MESSAGE
        assert TaskStatus.COMPLETED not in store.get("t1").statuses

    async def test_strategy_timeout_is_not_retried(self, queue):
        """A timeout raised inside the strategy is terminal after one attempt."""
        calls = []

        @queue.registry.strategy("note-taker")
        async def upstream_timeout(context, config, progress):
            calls.append(1)
            raise TimeoutError()

        queue.start()
        job_id = await queue.submit(task())
        job = await wait_for_job(queue, job_id)

        assert job["state"] == "failed"
        assert job["attempts"] == 1
        assert job["failedReason"] == TIMEOUT_MESSAGE
        assert len(calls) == 1

    async def test_invalid_input_is_not_retried(self, queue, store):
        queue.start()
        job_id = await queue.submit(task(files=[]))
        job = await wait_for_job(queue, job_id)
        await queue.reporter.flush(1.0)

        assert job["state"] == "failed"
        assert job["attempts"] == 1
        assert "No files provided" in job["failedReason"]
        assert store.get("t1").status is TaskStatus.FAILED

    async def test_exponential_backoff_delays_retry(self, store):
        queue = make_queue(store, backoff=BackoffPolicy("exponential", 200))
        calls = []

        @queue.registry.strategy("note-taker")
        async def flaky(context, config, progress):
            calls.append(time.monotonic())
            if len(calls) == 1:
                raise RuntimeError("try again")
            return StrategyResult(content="ok")

        queue.start()
        job_id = await queue.submit(task())
        await wait_for_job(queue, job_id, states=("delayed",))
        job = await wait_for_job(queue, job_id)
        await queue.close()

        assert job["state"] == "completed"
        assert calls[1] - calls[0] >= 0.2


class TestConcurrency:
    """Worker pool bound and state legality."""

    async def test_concurrency_bound(self, queue):
        running = 0
        peak = 0

        @queue.registry.strategy("note-taker")
        async def tracked(context, config, progress):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1
            return StrategyResult(content="ok")

        queue.start()
        job_ids = [await queue.submit(task(f"t{n}")) for n in range(6)]
        for job_id in job_ids:
            await wait_for_job(queue, job_id)

        assert peak == 2
        stats = await queue.get_stats()
        assert stats.completed == 6
        assert stats.active == 0

    async def test_mixed_outcomes_end_in_legal_states(self, store):
        queue = make_queue(store, concurrency=3)
        rng = random.Random(7)
        failures: dict[str, int] = {}

        @queue.registry.strategy("note-taker")
        async def scripted(context, config, progress):
            await asyncio.sleep(rng.random() / 100)
            outcome, key = config["outcome"], config["key"]
            if outcome == "broken" or (outcome == "flaky" and key not in failures):
                failures[key] = failures.get(key, 0) + 1
                raise RuntimeError(f"{outcome} {key}")
            await progress(50)
            return StrategyResult(content=key)

        expected = {
            "ok": ("completed", 1),
            "flaky": ("completed", 2),
            "broken": ("failed", 3),
            "invalid": ("failed", 1),
        }
        queue.start()
        submitted = {}
        for n in range(16):
            outcome = rng.choice(list(expected))
            files = [] if outcome == "invalid" else task()["files"]
            job_id = await queue.submit(
                task(f"t{n}", files=files, config={"outcome": outcome, "key": f"t{n}"})
            )
            submitted[job_id] = outcome

        for job_id, outcome in submitted.items():
            job = await wait_for_job(queue, job_id)
            assert (job["state"], job["attempts"]) == expected[outcome], outcome
            assert (job["result"] is not None) == (job["state"] == "completed")
        await queue.close()

        for n in range(16):
            statuses = store.get(f"t{n}").statuses
            assert statuses[0] is TaskStatus.QUEUED
            assert statuses[-1].is_terminal
            assert sum(s.is_terminal for s in statuses) == 1


class TestStalledJobs:
    """Expired leases are reclaimed."""

    async def claim_with_expired_lease(self, queue, token):
        conn = await queue.connection()
        now = time.time()
        return await db.claim_next(conn, lease_token=token, lease_expires_at=now - 1, now=now)

    async def test_stalled_job_requeued_then_failed(self, queue, store):
        job_id = await queue.submit(task(), attempts=2)
        sub = queue.subscribe()
        conn = await queue.connection()

        await self.claim_with_expired_lease(queue, "first")
        await queue._reclaim_stalled(conn, time.time())

        job = await queue.get_job(job_id)
        assert job["state"] == "waiting"
        assert job["attempts"] == 1
        assert sub.get_nowait().kind is EventKind.STALLED

        await self.claim_with_expired_lease(queue, "second")
        await queue._reclaim_stalled(conn, time.time())

        job = await queue.get_job(job_id)
        assert job["state"] == "failed"
        assert job["attempts"] == 2
        assert job["failedReason"] == STALLED_MESSAGE
        assert sub.get_nowait().kind is EventKind.FAILED

        await queue.reporter.flush(1.0)
        record = store.get("t1")
        assert record.status is TaskStatus.FAILED
        assert record.error == STALLED_MESSAGE

    async def test_live_lease_is_left_alone(self, queue):
        job_id = await queue.submit(task())
        conn = await queue.connection()
        now = time.time()
        await db.claim_next(conn, lease_token="live", lease_expires_at=now + 30, now=now)

        await queue._reclaim_stalled(conn, now)
        assert (await queue.get_job(job_id))["state"] == "active"

    async def test_heartbeat_keeps_long_job_alive(self, store):
        queue = make_queue(store, stall_interval_ms=150)

        @queue.registry.strategy("note-taker")
        async def quiet(context, config, progress):
            await asyncio.sleep(0.5)
            return StrategyResult(content="done")

        queue.start()
        job_id = await queue.submit(task())
        job = await wait_for_job(queue, job_id)
        await queue.close()

        assert job["state"] == "completed"
        assert job["attempts"] == 1


class TestLifecycle:
    """Start, stop and close."""

    async def test_start_is_idempotent(self, queue):
        queue.start()
        task_before = queue._dispatcher_task
        queue.start()
        assert queue._dispatcher_task is task_before
        assert queue.running

    async def test_stop_waits_for_running_jobs(self, queue):
        @queue.registry.strategy("note-taker")
        async def short(context, config, progress):
            await asyncio.sleep(0.05)
            return StrategyResult(content="ok")

        queue.start()
        job_id = await queue.submit(task())
        await wait_for_job(queue, job_id, states=("active",))
        await queue.stop()

        assert not queue.running
        assert (await queue.get_job(job_id))["state"] == "completed"

    async def test_stop_timeout_requeues_without_counting_attempt(self, queue):
        gate = asyncio.Event()

        @queue.registry.strategy("note-taker")
        async def blocked(context, config, progress):
            await gate.wait()
            return StrategyResult(content="ok")

        queue.start()
        job_id = await queue.submit(task())
        await wait_for_job(queue, job_id, states=("active",))
        await queue.stop(timeout=0.05)

        job = await queue.get_job(job_id)
        assert job["state"] == "waiting"
        assert job["attempts"] == 0

        gate.set()
        queue.start()
        job = await wait_for_job(queue, job_id)
        assert job["state"] == "completed"
        assert job["attempts"] == 1

    async def test_close_is_idempotent(self, queue):
        queue.start()
        await queue.close()
        await queue.close()

        with pytest.raises(RuntimeError):
            await queue.submit(task())
        with pytest.raises(RuntimeError):
            queue.start()

    async def test_context_manager(self, store):
        async with make_queue(store) as queue:
            job_id = await queue.submit(task())
            job = await wait_for_job(queue, job_id)
        assert job["state"] == "completed"
        assert queue._closed

    async def test_jobs_survive_restart(self, store, tmp_path):
        path = str(tmp_path / "jobs.db")

        first = make_queue(store, db_path=path)
        job_id = await first.submit(task())
        await first.close()

        second = make_queue(store, db_path=path)
        second.start()
        job = await wait_for_job(second, job_id)
        await second.close()

        assert job["state"] == "completed"


class TestEvents:
    """Event stream published to observers."""

    async def collect_until(self, sub, kind):
        kinds = []
        events = []
        while not kinds or kinds[-1] is not kind:
            event = await asyncio.wait_for(sub.get(), 5)
            kinds.append(event.kind)
            events.append(event)
        return kinds, events

    async def test_successful_job_events(self, queue):
        sub = queue.subscribe()
        queue.start()
        job_id = await queue.submit(task())

        kinds, events = await self.collect_until(sub, EventKind.COMPLETED)

        assert kinds[0] is EventKind.SUBMITTED
        assert kinds[1] is EventKind.ACTIVE
        assert EventKind.PROGRESS in kinds
        assert all(e.job_id == job_id for e in events)
        assert events[-1].duration_ms is not None
        assert events[-1].usage is not None
        assert events[-1].attempt == 1

    async def test_failed_job_events(self, queue):
        @queue.registry.strategy("note-taker")
        async def broken(context, config, progress):
            raise RuntimeError("boom")

        sub = queue.subscribe()
        queue.start()
        await queue.submit(task(), attempts=2)

        kinds, events = await self.collect_until(sub, EventKind.FAILED)

        assert kinds.count(EventKind.RETRYING) == 1
        assert kinds.count(EventKind.ACTIVE) == 2
        assert "boom" in events[-1].error

    async def test_close_ends_subscriptions(self, queue):
        sub = queue.subscribe()
        await queue.close()
        assert [event async for event in sub] == []


class TestMonitoring:
    """Health, statistics and dashboard views."""

    async def test_health_after_completed_jobs(self, queue):
        queue.start()
        for n in range(2):
            await wait_for_job(queue, await queue.submit(task(f"t{n}")))
        await eventually(lambda: queue.monitor.metrics.processed == 2)

        health = await queue.get_health()
        assert health["status"] == "healthy"
        assert health["warnings"] == []
        assert health["metrics"]["processed"] == 2
        assert health["metrics"]["completed"] == 2
        assert health["metrics"]["averageProcessingTime"] > 0

    async def test_job_stats(self, queue):
        queue.start()
        ids = [await queue.submit(task(f"t{n}")) for n in range(2)]
        jobs = [await wait_for_job(queue, job_id) for job_id in ids]

        stats = await queue.get_job_stats()
        tokens = sum(job["result"]["usage"]["tokensUsed"] for job in jobs)
        assert stats["total"] == 2
        assert stats["successful"] == 2
        assert stats["failed"] == 0
        assert stats["byAgentType"] == {"note-taker": 2}
        assert stats["byUser"] == {"u1": 2}
        assert stats["totalTokens"] == tokens
        assert stats["totalCost"] == 0.0

    async def test_dashboard_data(self, queue):
        data = await queue.get_dashboard_data()
        assert set(data) == {"health", "stats", "timestamp"}
        assert set(data["stats"]) == {"hourly", "daily"}
        assert data["stats"]["daily"]["total"] == 0
