"""agentcue - A durable async pipeline for long-running agent tasks."""

from agentcue.cache import TTLCache
from agentcue.config import QueueSettings, build_queue
from agentcue.errors import (
    AgentCueError,
    InvalidInput,
    JobTimeoutError,
    StalledJobError,
    StatusSinkError,
    StrategyError,
)
from agentcue.events import EventKind, QueueEvent
from agentcue.models import (
    AgentContext,
    AgentType,
    Job,
    JobState,
    QueueStats,
    StatusUpdate,
    StrategyResult,
    TaskData,
    TaskFile,
    TaskStatus,
)
from agentcue.policy import BackoffPolicy, calculate_timeout
from agentcue.queue import TaskQueue
from agentcue.store import HttpTaskStore, MemoryTaskStore
from agentcue.strategies import AgentStrategy, PlaceholderStrategy, StrategyRegistry

__version__ = "0.1.0"
__all__ = [
    "TaskQueue",
    "QueueSettings",
    "build_queue",
    "TaskData",
    "TaskFile",
    "TaskStatus",
    "Job",
    "JobState",
    "AgentType",
    "AgentContext",
    "StrategyResult",
    "StatusUpdate",
    "QueueStats",
    "QueueEvent",
    "EventKind",
    "AgentStrategy",
    "PlaceholderStrategy",
    "StrategyRegistry",
    "BackoffPolicy",
    "calculate_timeout",
    "TTLCache",
    "HttpTaskStore",
    "MemoryTaskStore",
    "AgentCueError",
    "InvalidInput",
    "StrategyError",
    "JobTimeoutError",
    "StalledJobError",
    "StatusSinkError",
]
