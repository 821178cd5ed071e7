"""Exceptions raised by agentcue."""

from __future__ import annotations


class AgentCueError(Exception):
    """Base class for agentcue errors."""


class InvalidInput(AgentCueError, ValueError):
    """Submission or task input is unusable. Never retried."""


class StrategyError(AgentCueError):
    """An agent strategy failed while producing its result."""


class JobTimeoutError(AgentCueError, TimeoutError):
    """A job exceeded its wall-clock budget. Never retried."""


class StalledJobError(AgentCueError):
    """A job stopped heartbeating and exhausted its attempts."""


class StatusSinkError(AgentCueError):
    """The external task store rejected or never received an update."""
