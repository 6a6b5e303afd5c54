from __future__ import annotations


class TaskRelayError(Exception):
    """Base class for errors surfaced by taskrelay."""


class AgentStartError(TaskRelayError):
    """The remote agent refused or failed the task-start call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QueueFileError(TaskRelayError):
    """A queue file could not be read or parsed."""
