"""Subprocess transport helpers for runners."""

from __future__ import annotations

import asyncio
import logging

from threadpilot.runners.events import ExitInfo

log = logging.getLogger(__name__)


class SubprocessTransport:
    """Owns one child process with piped stdin, stdout and stderr."""

    def __init__(self):
        self.process: asyncio.subprocess.Process | None = None

    async def start(self, cmd: list[str], *, cwd: str) -> None:
        self.process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
        if self.process.stdout is None or self.process.stdin is None:
            raise RuntimeError("Subprocess pipes missing")

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def stdout(self) -> asyncio.StreamReader:
        if not self.process or self.process.stdout is None:
            raise RuntimeError("Subprocess not started")
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.process.stderr if self.process else None

    async def write_line(self, line: str) -> None:
        proc = self.process
        if not proc or not proc.stdin or proc.stdin.is_closing():
            raise BrokenPipeError("Subprocess stdin is closed")
        proc.stdin.write((line + "\n").encode("utf-8"))
        await proc.stdin.drain()

    def close_stdin(self) -> None:
        proc = self.process
        if proc and proc.stdin and not proc.stdin.is_closing():
            proc.stdin.close()

    async def wait(self) -> ExitInfo:
        proc = self.process
        if not proc:
            return ExitInfo(returncode=None)
        await proc.wait()
        return ExitInfo.from_returncode(proc.returncode)

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.process else None

    def kill(self) -> None:
        if self.process:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    async def terminate_and_kill(self, timeout: float = 5.0) -> None:
        """Terminate the process, wait, then force-kill if still alive."""
        proc = self.process
        if not proc or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except (asyncio.TimeoutError, ProcessLookupError):
            log.warning("Process %s did not exit after SIGTERM, sending SIGKILL", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
