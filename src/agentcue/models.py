"""Core data models for agentcue."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """User-visible status of a task in the external store."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class JobState(str, Enum):
    """Possible states for a job in the queue backend."""

    WAITING = "waiting"
    DELAYED = "delayed"  # Backing off before a retry
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentType(str, Enum):
    """Agent types known to the application."""

    NOTE_TAKER = "note-taker"
    RESEARCHER = "researcher"
    STUDY_BUDDY = "study-buddy"
    ASSIGNMENT = "assignment"


@dataclass
class TaskFile:
    """An attachment selected for a task."""

    file_id: str
    file_name: str
    mime_type: str = "text/plain"
    size: int = 0  # Bytes
    content: str | None = None  # Inline text, when the caller already has it

    def to_dict(self) -> dict[str, Any]:
        data = {
            "fileId": self.file_id,
            "fileName": self.file_name,
            "mimeType": self.mime_type,
            "size": self.size,
        }
        if self.content is not None:
            data["content"] = self.content
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskFile:
        return cls(
            file_id=str(data.get("fileId") or data.get("id") or ""),
            file_name=data.get("fileName") or data.get("name") or "",
            mime_type=data.get("mimeType", "text/plain"),
            size=int(data.get("size") or data.get("fileSize") or 0),
            content=data.get("content"),
        )


@dataclass
class TaskData:
    """A task submission. Immutable once it has been queued."""

    task_id: str
    agent_type: str
    files: list[TaskFile] = field(default_factory=list)
    user_id: str = ""
    course_instance_id: str = ""
    task_name: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    course_context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "userId": self.user_id,
            "courseInstanceId": self.course_instance_id,
            "agentType": self.agent_type,
            "taskName": self.task_name,
            "config": self.config,
            "files": [f.to_dict() for f in self.files],
            "courseContext": self.course_context,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskData:
        return cls(
            task_id=str(data.get("taskId", "")),
            agent_type=data["agentType"],
            files=[TaskFile.from_dict(f) for f in data["files"]],
            user_id=data.get("userId", ""),
            course_instance_id=data.get("courseInstanceId", ""),
            task_name=data.get("taskName", ""),
            config=dict(data.get("config") or {}),
            course_context=dict(data.get("courseContext") or {}),
        )

    @classmethod
    def from_json(cls, raw: str) -> TaskData:
        return cls.from_dict(json.loads(raw))


@dataclass
class Job:
    """One queue-tracked execution record for a task."""

    id: str
    task_id: str
    data: TaskData
    state: JobState = JobState.WAITING
    progress: int = 0
    attempts: int = 0  # Attempts started so far
    max_attempts: int = 3
    timeout_ms: int = 300_000
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 2000
    created_at: float = 0.0
    available_at: float = 0.0
    processed_at: float | None = None
    finished_at: float | None = None
    result: dict[str, Any] | None = None
    failed_reason: str | None = None
    lease_token: str | None = None
    lease_expires_at: float | None = None

    @property
    def agent_type(self) -> str:
        return self.data.agent_type

    def snapshot(self) -> dict[str, Any]:
        """Read-only view for callers outside the queue."""
        return {
            "id": self.id,
            "taskId": self.task_id,
            "state": self.state.value,
            "progress": self.progress,
            "data": self.data.to_dict(),
            "result": self.result,
            "failedReason": self.failed_reason,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "timeoutMs": self.timeout_ms,
            "createdAt": self.created_at,
            "processedAt": self.processed_at,
            "completedAt": self.finished_at,
        }


@dataclass
class ProcessedFile:
    """Normalized output of the file content processor."""

    file_name: str
    content: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    word_count: int = 0
    chunks: list[str] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AgentContext:
    """Aggregated input handed to an agent strategy."""

    files: list[ProcessedFile] = field(default_factory=list)
    file_count: int = 0
    total_words: int = 0
    total_tokens: int = 0
    chunks: list[str] = field(default_factory=list)
    skipped_files: list[dict[str, str]] = field(default_factory=list)
    course_context: dict[str, Any] = field(default_factory=dict)


@dataclass
class StrategyResult:
    """Canonical result shape returned by every strategy."""

    content: str
    format: str = "markdown"
    metadata: dict[str, Any] = field(default_factory=dict)
    tokens_used: int = 0
    cost: float = 0.0
    model: str | None = None


@dataclass
class StatusUpdate:
    """A partial update pushed to the external task store."""

    task_id: str
    status: TaskStatus | None = None
    progress: int | None = None
    message: str | None = None
    result: dict[str, Any] | None = None
    usage: dict[str, Any] | None = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"taskId": self.task_id}
        if self.status is not None:
            payload["status"] = self.status.value
        for key in ("progress", "message", "result", "usage", "error"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass
class QueueStats:
    """Job counts by queue state."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
        }
