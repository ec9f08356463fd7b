"""Typed stream events produced by a runner.

The assistant CLI is a versioned external tool, so anything outside the known
tags is parsed into `UnknownEvent` rather than assumed away.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

ABNORMAL_EXIT = "error_abnormal_exit"

RESULT_SUBTYPES = frozenset(
    {
        "success",
        "error_max_turns",
        "error_during_execution",
        "error_max_budget_usd",
        ABNORMAL_EXIT,
    }
)


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str | None
    name: str
    input: dict = field(default_factory=dict)


ContentBlock = Union[TextBlock, ToolUseBlock]


@dataclass(frozen=True)
class InitEvent:
    session_id: str | None
    cwd: str | None = None
    model: str | None = None
    tools: tuple[str, ...] = ()


@dataclass(frozen=True)
class AssistantMessage:
    blocks: tuple[ContentBlock, ...]
    session_id: str | None = None

    @property
    def text(self) -> str:
        return "\n\n".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> tuple[ToolUseBlock, ...]:
        return tuple(b for b in self.blocks if isinstance(b, ToolUseBlock))


@dataclass(frozen=True)
class ToolResultEvent:
    tool_use_id: str | None
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class ResultEvent:
    subtype: str
    is_error: bool
    text: str = ""
    session_id: str | None = None
    cost_usd: float = 0.0
    num_turns: int = 0
    duration_s: float = 0.0
    usage: dict = field(default_factory=dict)
    model: str | None = None
    abnormal: bool = False

    @classmethod
    def abnormal_exit(
        cls,
        *,
        returncode: int | None,
        session_id: str | None,
        detail: str = "",
    ) -> "ResultEvent":
        msg = f"Assistant process exited unexpectedly (code {returncode})"
        if detail:
            msg = f"{msg}: {detail}"
        return cls(
            subtype=ABNORMAL_EXIT,
            is_error=True,
            text=msg,
            session_id=session_id,
            abnormal=True,
        )


@dataclass(frozen=True)
class UnknownEvent:
    type: str | None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ExitInfo:
    returncode: int | None
    signal: int | None = None

    @classmethod
    def from_returncode(cls, rc: int | None) -> "ExitInfo":
        return cls(returncode=rc, signal=-rc if rc is not None and rc < 0 else None)


StreamEvent = Union[
    InitEvent, AssistantMessage, ToolResultEvent, ResultEvent, UnknownEvent
]
