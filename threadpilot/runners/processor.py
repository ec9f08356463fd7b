"""Claude stream-json event processing.

Separates parsing from the subprocess orchestration in
`threadpilot/runners/claude.py`: one decoded JSON object in, zero or more
typed events out.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from threadpilot.runners.base import RunState
from threadpilot.runners.events import (
    AssistantMessage,
    ContentBlock,
    InitEvent,
    ResultEvent,
    StreamEvent,
    TextBlock,
    ToolResultEvent,
    ToolUseBlock,
    UnknownEvent,
)

# Acknowledgements of our own control requests; nothing to surface.
_IGNORED_TYPES = frozenset({"control_response"})


def _content_to_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text") or ""))
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(p for p in parts if p)
    return ""


def describe_tool(block: ToolUseBlock) -> str:
    """Compact one-line description of a tool call, e.g. `[tool:bash ls -la]`."""

    def _clean(value: object, *, max_len: int = 80) -> str | None:
        if not isinstance(value, str):
            return None
        s = " ".join(value.split())
        if not s:
            return None
        if len(s) > max_len:
            return s[: max_len - 3] + "..."
        return s

    tool_id = block.name.strip().lower() or "?"
    tool_input = block.input or {}

    detail: str | None = None
    if block.name == "Bash":
        detail = _clean(tool_input.get("command"))
    elif block.name in ("Read", "Write", "Edit"):
        path = str(tool_input.get("file_path", "") or "")
        detail = Path(path).name if path else None
    else:
        detail = _clean(tool_input.get("description")) or _clean(
            tool_input.get("pattern")
        )
    return f"[tool:{tool_id} {detail}]" if detail else f"[tool:{tool_id}]"


def format_result_summary(result: ResultEvent, *, tool_count: int) -> str:
    usage = result.usage or {}
    total_tokens = sum(
        int(usage.get(k, 0) or 0)
        for k in (
            "input_tokens",
            "cache_creation_input_tokens",
            "cache_read_input_tokens",
            "output_tokens",
        )
    )
    model = result.model or "claude"
    return (
        f"[{model} {result.num_turns}t {tool_count}tools ${result.cost_usd:.3f}"
        f" {result.duration_s:.1f}s | {total_tokens / 1000:.1f}k tokens]"
    )


class ClaudeEventProcessor:
    def __init__(
        self,
        *,
        log_to_file: Callable[[str], None] | None = None,
        log_response: Callable[[str], None] | None = None,
    ):
        self._log_to_file = log_to_file or (lambda _s: None)
        self._log_response = log_response or (lambda _s: None)

    def _handle_system(self, event: dict, state: RunState) -> list[StreamEvent]:
        if event.get("subtype") != "init":
            return []
        if state.saw_init:
            return []
        state.saw_init = True

        session_id = event.get("session_id") or None
        if session_id:
            state.session_id = session_id
        model = event.get("model") or None
        if model:
            state.model = model
        tools = event.get("tools")
        return [
            InitEvent(
                session_id=session_id,
                cwd=event.get("cwd") or None,
                model=model,
                tools=tuple(str(t) for t in tools if t) if isinstance(tools, list) else (),
            )
        ]

    def _handle_assistant(self, event: dict, state: RunState) -> list[StreamEvent]:
        message = event.get("message")
        if not isinstance(message, dict):
            return []
        content = message.get("content") or []
        if not isinstance(content, list):
            return []

        blocks: list[ContentBlock] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = str(block.get("text") or "").strip()
                if not text:
                    continue
                state.text = text
                self._log_response(text)
                blocks.append(TextBlock(text=text))
            elif block_type == "tool_use":
                tool_id = block.get("id")
                if tool_id and tool_id in state.seen_tool_ids:
                    continue
                if tool_id:
                    state.seen_tool_ids.add(tool_id)
                state.tool_count += 1
                tool_input = block.get("input")
                tool = ToolUseBlock(
                    id=tool_id,
                    name=str(block.get("name") or "?"),
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
                self._log_to_file(describe_tool(tool) + "\n")
                blocks.append(tool)

        if not blocks:
            return []
        return [
            AssistantMessage(
                blocks=tuple(blocks),
                session_id=event.get("session_id") or state.session_id,
            )
        ]

    def _handle_user(self, event: dict, state: RunState) -> list[StreamEvent]:
        message = event.get("message")
        if not isinstance(message, dict):
            return []
        content = message.get("content")
        if not isinstance(content, list):
            return []
        out: list[StreamEvent] = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            out.append(
                ToolResultEvent(
                    tool_use_id=block.get("tool_use_id"),
                    content=_content_to_text(block.get("content")),
                    is_error=bool(block.get("is_error", False)),
                )
            )
        return out

    def _handle_result(self, event: dict, state: RunState) -> list[StreamEvent]:
        if state.saw_result:
            return []

        is_error = bool(event.get("is_error", False))
        subtype = str(
            event.get("subtype") or ("error_during_execution" if is_error else "success")
        )

        model = state.model
        model_usage = event.get("modelUsage")
        if isinstance(model_usage, dict):
            for name in model_usage:
                model = name
                break

        usage = event.get("usage")
        text = event.get("result")
        if not isinstance(text, str):
            text = state.text if not is_error else "Unknown error"

        result = ResultEvent(
            subtype=subtype,
            is_error=is_error,
            text=text,
            session_id=event.get("session_id") or state.session_id,
            cost_usd=float(event.get("total_cost_usd") or 0),
            num_turns=int(event.get("num_turns") or 0),
            duration_s=float(event.get("duration_ms") or 0) / 1000,
            usage=usage if isinstance(usage, dict) else {},
            model=model,
        )
        # Only a result that parsed counts as the end of the run.
        state.saw_result = True
        return [result]

    def parse_event(self, event: dict, state: RunState) -> list[StreamEvent]:
        event_type = event.get("type")

        if event_type == "system":
            return self._handle_system(event, state)
        if event_type == "assistant":
            return self._handle_assistant(event, state)
        if event_type == "user":
            return self._handle_user(event, state)
        if event_type == "result":
            return self._handle_result(event, state)
        if event_type in _IGNORED_TYPES:
            return []

        return [UnknownEvent(type=str(event_type) if event_type else None, raw=event)]
