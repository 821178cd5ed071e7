"""Task store adapter: pushes task status to the external task store.

Delivery is best-effort. The pipeline hands updates to a `StatusReporter`,
which sends them in order from a background task and logs failures; nothing
in the pipeline waits on, or fails because of, the external store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from agentcue.errors import StatusSinkError
from agentcue.models import StatusUpdate, TaskStatus

logger = logging.getLogger(__name__)


class TaskStore(Protocol):
    """Anything that can persist a task status update."""

    async def update(self, update: StatusUpdate) -> None: ...


class HttpTaskStore:
    """
    Task store reached over an authenticated HTTP endpoint.

    Example:
        store = HttpTaskStore("https://tasks.example.com", api_secret="...")
        await store.update(StatusUpdate(task_id="t1", progress=40))
        await store.aclose()
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_secret: str,
        path: str = "/api/updateTaskStatus",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("Task store base_url is required")
        self.base_url = base_url.rstrip("/")
        self.path = path
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_secret}"}

    async def update(self, update: StatusUpdate) -> None:
        url = f"{self.base_url}{self.path}"
        try:
            resp = await self._client.post(url, json=update.to_payload(), headers=self._headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StatusSinkError(
                f"Task store rejected update for {update.task_id}: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise StatusSinkError(f"Task store unreachable: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


@dataclass
class TaskRecord:
    """Last known state of a task in a `MemoryTaskStore`."""

    task_id: str
    status: TaskStatus = TaskStatus.QUEUED
    progress: int = 0
    message: str | None = None
    result: dict[str, Any] | None = None
    usage: dict[str, Any] | None = None
    error: str | None = None
    history: list[StatusUpdate] = field(default_factory=list)

    @property
    def statuses(self) -> list[TaskStatus]:
        """Distinct statuses in the order they were observed."""
        seen: list[TaskStatus] = []
        for upd in self.history:
            if upd.status is not None and (not seen or seen[-1] != upd.status):
                seen.append(upd.status)
        return seen


class MemoryTaskStore:
    """In-process task store. Keeps every update for inspection."""

    def __init__(self) -> None:
        self.tasks: dict[str, TaskRecord] = {}
        self.fail_updates = False  # Simulate an unreachable store

    async def update(self, update: StatusUpdate) -> None:
        if self.fail_updates:
            raise StatusSinkError(f"Task store unavailable for {update.task_id}")
        record = self.tasks.setdefault(update.task_id, TaskRecord(task_id=update.task_id))
        record.history.append(update)
        if update.status is not None:
            record.status = update.status
        for key in ("progress", "message", "result", "usage", "error"):
            value = getattr(update, key)
            if value is not None:
                setattr(record, key, value)

    def get(self, task_id: str) -> TaskRecord | None:
        return self.tasks.get(task_id)


class StatusReporter:
    """
    Detached, ordered delivery of status updates.

    `push()` never blocks and never raises. Updates are sent one at a time
    by a background task, so a task's updates reach the store in the order
    they were pushed.
    """

    def __init__(self, store: TaskStore | None) -> None:
        self.store = store
        self.sent = 0
        self.failed = 0
        self._pending: asyncio.Queue[StatusUpdate] | None = None
        self._drain_task: asyncio.Task | None = None

    def push(self, update: StatusUpdate) -> None:
        if self.store is None:
            return
        if self._pending is None:
            self._pending = asyncio.Queue()
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())
        self._pending.put_nowait(update)

    async def _drain(self) -> None:
        assert self._pending is not None
        while True:
            update = await self._pending.get()
            try:
                await self.store.update(update)
                self.sent += 1
            except Exception as e:
                self.failed += 1
                logger.warning(
                    "Status push failed for task %s (status=%s, progress=%s): %s",
                    update.task_id,
                    update.status.value if update.status else None,
                    update.progress,
                    e,
                )
            finally:
                self._pending.task_done()

    async def flush(self, timeout: float | None = None) -> None:
        """Wait until every pushed update has been attempted."""
        if self._pending is None:
            return
        try:
            await asyncio.wait_for(self._pending.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Gave up waiting for %d status pushes", self._pending.qsize())

    async def close(self, timeout: float | None = 5.0) -> None:
        await self.flush(timeout)
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None
