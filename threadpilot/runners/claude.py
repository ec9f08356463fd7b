"""Claude Code CLI runner (bidirectional stream-json mode)."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator

from threadpilot.errors import RunnerSpawnError
from threadpilot.runners.base import BaseRunner, RunState
from threadpilot.runners.events import (
    ExitInfo,
    ResultEvent,
    StreamEvent,
    UnknownEvent,
)
from threadpilot.runners.framing import LineFramer
from threadpilot.runners.processor import ClaudeEventProcessor
from threadpilot.runners.subprocess_transport import SubprocessTransport
from threadpilot.stores.base import utcnow

log = logging.getLogger("claude")

_READ_CHUNK = 64 * 1024
_STDERR_TAIL_BYTES = 4096


class ClaudeRunner(BaseRunner):
    """Owns one `claude -p` subprocess and its event stream.

    stdin stays open after the initial prompt so answers and interrupts can be
    written mid-run. Events are delivered in emission order through
    `events()`; `wait()` resolves with the exit status once the process is
    gone.
    """

    def __init__(
        self,
        working_dir: str,
        output_dir: Path | None = None,
        session_name: str | None = None,
        *,
        claude_bin: str = "claude",
        extra_args: tuple[str, ...] | list[str] = (),
        resume_session_id: str | None = None,
        kill_grace_s: float = 5.0,
    ):
        super().__init__(working_dir, output_dir, session_name)
        self.claude_bin = claude_bin
        self.extra_args = list(extra_args)
        self.resume_session_id = resume_session_id
        self.kill_grace_s = kill_grace_s

        self._transport = SubprocessTransport()
        self._processor = ClaudeEventProcessor(
            log_to_file=self._log_to_file,
            log_response=self._log_response,
        )
        self._state = RunState(session_id=resume_session_id)
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._exit: asyncio.Future[ExitInfo] | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stderr_tail = bytearray()
        self._kill_task: asyncio.Task | None = None
        self._kill_requested = False
        self._request_seq = 0
        self.last_event_at: datetime | None = None

    # -- state ------------------------------------------------------------

    @property
    def session_id(self) -> str | None:
        return self._state.session_id

    @property
    def tool_count(self) -> int:
        return self._state.tool_count

    @property
    def started(self) -> bool:
        return self._exit is not None

    @property
    def is_alive(self) -> bool:
        return self._exit is not None and not self._exit.done()

    @property
    def pid(self) -> int | None:
        return self._transport.pid

    def _build_command(self) -> list[str]:
        cmd = [
            self.claude_bin,
            "-p",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if self.resume_session_id:
            cmd.extend(["--resume", self.resume_session_id])
        cmd.extend(self.extra_args)
        return cmd

    # -- lifecycle --------------------------------------------------------

    async def start(self, prompt: str) -> None:
        """Spawn the CLI and write the initial prompt.

        Raises RunnerSpawnError if the process cannot be started.
        """
        if self.started:
            raise RuntimeError("Runner already started")

        cmd = self._build_command()
        log.info(f"Claude: {prompt[:50]}...")
        log.debug(f"Claude command: {cmd}")
        try:
            await self._transport.start(cmd, cwd=self.working_dir)
        except FileNotFoundError as e:
            raise RunnerSpawnError(
                f"Claude CLI not found ({self.claude_bin}); is it installed and on PATH?",
                binary=self.claude_bin,
            ) from e
        except OSError as e:
            raise RunnerSpawnError(
                f"Failed to start Claude CLI: {e}", binary=self.claude_bin
            ) from e

        self._exit = asyncio.get_running_loop().create_future()
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._reader_task = asyncio.create_task(self._read_loop())

        self._log_prompt(prompt)
        await self.send_text(prompt)

    async def wait(self) -> ExitInfo:
        if self._exit is None:
            raise RuntimeError("Runner not started")
        return await asyncio.shield(self._exit)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield stream events in order until the process is gone."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    # -- input ------------------------------------------------------------

    async def send(self, payload: dict) -> bool:
        """Write one JSON line to the CLI. Does not wait for a reply."""
        if not self.is_alive:
            log.warning("Dropping write to finished Claude process: %s", payload.get("type"))
            return False
        line = json.dumps(payload, separators=(",", ":"))
        try:
            await self._transport.write_line(line)
        except (BrokenPipeError, ConnectionResetError) as e:
            log.warning("Claude stdin closed while writing: %s", e)
            return False
        return True

    async def send_text(self, text: str) -> bool:
        return await self.send(
            {
                "type": "user",
                "message": {
                    "role": "user",
                    "content": [{"type": "text", "text": text}],
                },
            }
        )

    async def answer_tool(self, tool_use_id: str | None, text: str) -> bool:
        """Answer a pending tool invocation (e.g. AskUserQuestion)."""
        self._log_to_file(f"\n[answer {tool_use_id}] {text}\n")
        return await self.send(
            {
                "type": "user",
                "message": {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": tool_use_id,
                            "content": text,
                        }
                    ],
                },
            }
        )

    async def interrupt(self) -> bool:
        """Ask the CLI to stop the current turn."""
        self._request_seq += 1
        request_id = f"req_{self._request_seq}_{secrets.token_hex(4)}"
        return await self.send(
            {
                "type": "control_request",
                "request_id": request_id,
                "request": {"subtype": "interrupt"},
            }
        )

    # -- termination ------------------------------------------------------

    async def kill(self, graceful: bool = True) -> None:
        """Stop the process. Idempotent; a no-op once the process has exited."""
        if not self.is_alive:
            return
        self._kill_requested = True
        if self._kill_task is None:
            self._kill_task = asyncio.create_task(self._do_kill(graceful))
        await asyncio.shield(self._kill_task)

    async def _do_kill(self, graceful: bool) -> None:
        self._transport.close_stdin()
        if graceful:
            await self._transport.terminate_and_kill(self.kill_grace_s)
        else:
            self._transport.kill()
        assert self._exit is not None
        if self._reader_task is None or self._reader_task.done():
            self._finish(ExitInfo.from_returncode(self._transport.returncode))
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._exit), timeout=self.kill_grace_s)
        except asyncio.TimeoutError:
            # A grandchild still holds stdout open; stop reading.
            log.warning("Claude output did not close after kill; abandoning reader")
            self._reader_task.cancel()
            await asyncio.wait({self._reader_task}, timeout=self.kill_grace_s)
            self._finish(ExitInfo.from_returncode(self._transport.returncode))

    # -- output -----------------------------------------------------------

    async def _drain_stderr(self) -> None:
        """Read stderr so the child never blocks on a full pipe; keep a tail."""
        stream = self._transport.stderr
        if stream is None:
            return
        try:
            while True:
                chunk = await stream.read(8192)
                if not chunk:
                    break
                self._stderr_tail.extend(chunk)
                if len(self._stderr_tail) > _STDERR_TAIL_BYTES:
                    del self._stderr_tail[:-_STDERR_TAIL_BYTES]
        except ConnectionResetError:
            log.debug("Claude stderr reset")

    def _stderr_text(self) -> str:
        return self._stderr_tail.decode("utf-8", errors="replace").strip()

    def _emit(self, event: StreamEvent) -> None:
        self.last_event_at = utcnow()
        self._queue.put_nowait(event)

    def _handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            obj = json.loads(line)
        except ValueError:
            log.warning("Dropping non-JSON line from Claude: %s", line[:200])
            return
        if not isinstance(obj, dict):
            log.warning("Dropping non-object event from Claude: %s", line[:200])
            return

        try:
            events = self._processor.parse_event(obj, self._state)
        except Exception as e:
            log.warning(
                "Dropping malformed %r event from Claude (%s): %s",
                obj.get("type"),
                e,
                line[:200],
            )
            return

        for event in events:
            if isinstance(event, UnknownEvent):
                log.warning("Dropping unrecognized Claude event type %r", event.type)
                continue
            self._emit(event)
            if isinstance(event, ResultEvent):
                # Closing stdin lets the CLI exit once the turn is done.
                self._transport.close_stdin()

    async def _read_loop(self) -> None:
        framer = LineFramer()
        info = ExitInfo(returncode=None)
        try:
            try:
                stdout = self._transport.stdout
                while True:
                    chunk = await stdout.read(_READ_CHUNK)
                    if not chunk:
                        break
                    for line in framer.feed(chunk):
                        self._handle_line(line)
                tail = framer.flush()
                if tail:
                    self._handle_line(tail)
            except Exception:
                log.exception("Claude output handling failed; killing process")
                self._transport.kill()

            info = await self._transport.wait()
            if self._stderr_task:
                await asyncio.wait({self._stderr_task}, timeout=1.0)

            if not self._state.saw_result and not self._kill_requested:
                stderr = self._stderr_text()
                log.warning(
                    "Claude exited without a result (code %s)%s",
                    info.returncode,
                    f": {stderr[-500:]}" if stderr else "",
                )
                self._emit(
                    ResultEvent.abnormal_exit(
                        returncode=info.returncode,
                        session_id=self._state.session_id,
                        detail=stderr.splitlines()[-1] if stderr else "",
                    )
                )
        finally:
            # Every exit path resolves wait() and ends events().
            self._finish(info)

    def _finish(self, info: ExitInfo) -> None:
        if self._exit is None or self._exit.done():
            return
        log.info("Claude process %s exited: %s", self._transport.pid, info)
        self._exit.set_result(info)
        self._queue.put_nowait(None)
        if self._stderr_task and not self._stderr_task.done():
            self._stderr_task.cancel()
