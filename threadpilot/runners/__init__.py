"""Assistant CLI runners."""

from threadpilot.runners.claude import ClaudeRunner
from threadpilot.runners.events import (
    AssistantMessage,
    ExitInfo,
    InitEvent,
    ResultEvent,
    StreamEvent,
    TextBlock,
    ToolResultEvent,
    ToolUseBlock,
    UnknownEvent,
)
from threadpilot.runners.ports import Runner, RunnerFactory
from threadpilot.runners.registry import claude_runner_factory

__all__ = [
    "AssistantMessage",
    "ClaudeRunner",
    "ExitInfo",
    "InitEvent",
    "ResultEvent",
    "Runner",
    "RunnerFactory",
    "StreamEvent",
    "TextBlock",
    "ToolResultEvent",
    "ToolUseBlock",
    "UnknownEvent",
    "claude_runner_factory",
]
