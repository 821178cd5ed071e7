"""Execution policy: timeouts, backoff and failure classes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from agentcue.errors import InvalidInput
from agentcue.models import TaskFile

# Base wall-clock budget per agent type, in milliseconds
BASE_TIMEOUTS_MS: dict[str, int] = {
    "note-taker": 180_000,
    "researcher": 300_000,
    "study-buddy": 240_000,
    "assignment": 360_000,
}
DEFAULT_TIMEOUT_MS = 300_000
MAX_TIMEOUT_MS = 600_000
TIMEOUT_MS_PER_MB = 30_000

TIMEOUT_MESSAGE = (
    "Task processing timed out. Please try with smaller files or simpler requests."
)

_TIMEOUT_PATTERNS: tuple[str, ...] = ("timed out", "timeout")


def calculate_timeout(agent_type: str, files: Iterable[TaskFile]) -> int:
    """
    Wall-clock budget for one attempt, in milliseconds.

    Base timeout for the agent type plus 30 seconds per megabyte of
    attachments, capped at 10 minutes.
    """
    total_mb = sum((f.size or 0) for f in files) / (1024 * 1024)
    base = BASE_TIMEOUTS_MS.get(agent_type, DEFAULT_TIMEOUT_MS)
    return int(min(base + total_mb * TIMEOUT_MS_PER_MB, MAX_TIMEOUT_MS))


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay between a failed attempt and its retry."""

    type: str = "exponential"  # "exponential" or "fixed"
    delay_ms: int = 2000

    def __post_init__(self) -> None:
        if self.type not in ("exponential", "fixed"):
            raise ValueError(f"Unknown backoff type: {self.type}. Use 'exponential' or 'fixed'.")
        if self.delay_ms < 0:
            raise ValueError("Backoff delay must be non-negative")

    def delay_for(self, attempt: int) -> int:
        """Delay in ms before retrying after failed attempt number `attempt` (1-based)."""
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * 2 ** max(attempt - 1, 0)


class FailureKind(str, Enum):
    """How the queue treats a failed attempt."""

    VALIDATION = "validation"  # Terminal, user must fix the input
    TIMEOUT = "timeout"  # Terminal, same payload would time out again
    TRANSIENT = "transient"  # Retried with backoff


def classify_failure(error: BaseException) -> FailureKind:
    """Classify an attempt failure, following the exception cause chain."""
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, InvalidInput):
            return FailureKind.VALIDATION
        if isinstance(current, TimeoutError):
            return FailureKind.TIMEOUT
        message = str(current).lower()
        if any(pattern in message for pattern in _TIMEOUT_PATTERNS):
            return FailureKind.TIMEOUT
        current = current.__cause__
    return FailureKind.TRANSIENT


def should_retry(kind: FailureKind, attempts: int, max_attempts: int) -> bool:
    """Whether a failed attempt gets another try."""
    if kind is not FailureKind.TRANSIENT:
        return False
    return attempts < max_attempts
