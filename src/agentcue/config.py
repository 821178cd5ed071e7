"""Queue settings loaded from keyword arguments or the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping

from agentcue.files import FileProcessor
from agentcue.policy import BackoffPolicy
from agentcue.queue import TaskQueue
from agentcue.store import HttpTaskStore, TaskStore
from agentcue.strategies import StrategyRegistry

logger = logging.getLogger(__name__)

ENV_PREFIX = "AGENTCUE_"


@dataclass
class QueueSettings:
    """Everything needed to build a `TaskQueue`."""

    db_path: str = "agentcue.db"
    concurrency: int = 2
    max_attempts: int = 3
    backoff_type: str = "exponential"
    backoff_ms: int = 2000
    stall_interval_ms: int = 30_000
    refresh_interval: float = 10.0
    task_store_url: str | None = None
    task_store_secret: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> QueueSettings:
        """
        Read settings from AGENTCUE_* variables, falling back to defaults.

        Raises:
            ValueError: If a numeric variable is not a number.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def number(name: str, default: int) -> int:
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None

        def seconds(name: str, default: float) -> float:
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                return default
            try:
                return float(raw)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None

        return cls(
            db_path=env.get(ENV_PREFIX + "DB_PATH") or defaults.db_path,
            concurrency=number("CONCURRENCY", defaults.concurrency),
            max_attempts=number("MAX_ATTEMPTS", defaults.max_attempts),
            backoff_type=env.get(ENV_PREFIX + "BACKOFF_TYPE") or defaults.backoff_type,
            backoff_ms=number("BACKOFF_MS", defaults.backoff_ms),
            stall_interval_ms=number("STALL_INTERVAL_MS", defaults.stall_interval_ms),
            refresh_interval=seconds("REFRESH_INTERVAL", defaults.refresh_interval),
            task_store_url=env.get(ENV_PREFIX + "TASK_STORE_URL") or None,
            task_store_secret=env.get(ENV_PREFIX + "TASK_STORE_SECRET") or None,
        )

    def build_task_store(self) -> TaskStore | None:
        if not self.task_store_url:
            return None
        if not self.task_store_secret:
            logger.warning("Task store URL set without a secret; requests will likely be rejected")
        return HttpTaskStore(self.task_store_url, api_secret=self.task_store_secret or "")

    def build_queue(
        self,
        *,
        registry: StrategyRegistry | None = None,
        file_processor: FileProcessor | None = None,
        task_store: TaskStore | None = None,
    ) -> TaskQueue:
        """Wire a queue from these settings. Explicit collaborators win."""
        return TaskQueue(
            self.db_path,
            registry=registry,
            file_processor=file_processor,
            task_store=task_store if task_store is not None else self.build_task_store(),
            concurrency=self.concurrency,
            max_attempts=self.max_attempts,
            backoff=BackoffPolicy(self.backoff_type, self.backoff_ms),
            stall_interval_ms=self.stall_interval_ms,
            refresh_interval=self.refresh_interval,
        )


def build_queue(environ: Mapping[str, str] | None = None, **collaborators) -> TaskQueue:
    """Shortcut for `QueueSettings.from_env(environ).build_queue(...)`."""
    return QueueSettings.from_env(environ).build_queue(**collaborators)
