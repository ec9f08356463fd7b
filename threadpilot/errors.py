"""Exception taxonomy.

Higher layers (the orchestrator and the guard boundary) format these
consistently without scraping strings. Persistence failures never surface as
exceptions; the stores log them and keep their in-memory state.
"""

from __future__ import annotations


class ThreadpilotError(RuntimeError):
    """Base class for all bridge errors."""


# Configuration


class ConfigurationError(ThreadpilotError):
    """Missing or invalid configuration (credentials, mappings, paths)."""


class WorkspaceNotFound(ConfigurationError):
    """No workspace mapping exists for a thread."""

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"No workspace mapping for thread {thread_id}")


# Subprocess


class RunnerError(ThreadpilotError):
    """Failure of the assistant subprocess."""


class RunnerSpawnError(RunnerError):
    """The assistant CLI could not be started."""

    def __init__(self, message: str, *, binary: str | None = None):
        self.binary = binary
        super().__init__(message)


# Protocol


class ProtocolError(ThreadpilotError):
    """A user interaction that cannot be applied to the current state."""


class SessionBusy(ProtocolError):
    """A thread already has a live runner (or one is being started)."""

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} already has a running task")


class QuestionExpired(ProtocolError):
    """The question can no longer be resolved (payload or runner gone)."""


class AlreadyAnswered(ProtocolError):
    """The question set was already resolved."""


class InvalidAnswer(ProtocolError):
    """The submitted answer is not acceptable (e.g. empty multi-select)."""
