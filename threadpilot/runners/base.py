"""Per-run parse state and the per-thread transcript shared by runners."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

log = logging.getLogger("runners")


@dataclass
class RunState:
    """What the event processor has learned so far about one subprocess."""

    session_id: str | None = None
    model: str | None = None
    # Latest assistant text; the fallback result text.
    text: str = ""
    tool_count: int = 0
    saw_init: bool = False
    saw_result: bool = False

    # The CLI can repeat a tool_use block when a message is re-emitted.
    seen_tool_ids: set = field(default_factory=set)


class BaseRunner:
    """Base class for CLI runners.

    With an output directory and a session name, prompts, answers and
    assistant text are appended to `<output_dir>/<session_name>.log`.
    """

    def __init__(
        self,
        working_dir: str,
        output_dir: Path | None = None,
        session_name: str | None = None,
    ):
        self.working_dir = working_dir
        self.session_name = session_name
        self.transcript: Path | None = None

        if output_dir is not None and session_name:
            self.transcript = Path(output_dir) / f"{session_name}.log"

    def _log_to_file(self, content: str) -> None:
        if self.transcript is None:
            return
        try:
            self.transcript.parent.mkdir(parents=True, exist_ok=True)
            with open(self.transcript, "a", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            log.warning("Transcript write failed for %s: %s", self.session_name, e)
            self.transcript = None

    def _stamp(self) -> str:
        return datetime.now().strftime("%H:%M:%S")

    def _log_prompt(self, prompt: str) -> None:
        self._log_to_file(f"\n[{self._stamp()}] >>> {prompt}\n")

    def _log_response(self, text: str) -> None:
        self._log_to_file(f"\n[{self._stamp()}] <<<\n{text}\n")
