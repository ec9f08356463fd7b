"""Ports (interfaces) for runner implementations.

The session manager, question protocol and orchestrator depend on these
contracts rather than on `ClaudeRunner` directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import AsyncIterator, Callable, Protocol

from threadpilot.runners.events import ExitInfo, StreamEvent


class Runner(Protocol):
    """One assistant subprocess and its event feed."""

    last_event_at: datetime | None

    @property
    def session_id(self) -> str | None: ...

    @property
    def is_alive(self) -> bool: ...

    @property
    def tool_count(self) -> int: ...

    async def start(self, prompt: str) -> None: ...

    def events(self) -> AsyncIterator[StreamEvent]: ...

    async def wait(self) -> ExitInfo: ...

    async def send(self, payload: dict) -> bool: ...

    async def send_text(self, text: str) -> bool: ...

    async def answer_tool(self, tool_use_id: str | None, text: str) -> bool: ...

    async def interrupt(self) -> bool: ...

    async def kill(self, graceful: bool = True) -> None: ...


# (working_dir, thread_id, resume_session_id) -> unstarted runner
RunnerFactory = Callable[[str, str, str | None], Runner]
