"""Thread -> session table with single-flight runner ownership.

The manager is the only component allowed to kill a runner. `terminate()` is
the cleanup choke point used by explicit stops, the inactivity sweep, feed
completion and process shutdown alike.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable

from threadpilot.errors import (
    ConfigurationError,
    RunnerError,
    RunnerSpawnError,
    SessionBusy,
    WorkspaceNotFound,
)
from threadpilot.runners.ports import Runner, RunnerFactory
from threadpilot.stores.base import utcnow
from threadpilot.stores.payloads import PayloadStore
from threadpilot.stores.workspaces import WorkspaceStore

log = logging.getLogger("sessions")


@dataclass
class Session:
    thread_id: str
    channel_id: str | None
    directory: str
    project_name: str
    autopilot: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    # Assistant-reported id; distinct from the thread id.
    session_id: str | None = None
    runner: Runner | None = None

    @property
    def is_running(self) -> bool:
        return self.runner is not None and self.runner.is_alive


@dataclass(frozen=True)
class SweepReport:
    evicted_mappings: tuple[str, ...] = ()
    inactive: tuple[str, ...] = ()
    expired_payloads: int = 0


InactiveCallback = Callable[[Session], Awaitable[None]]


class SessionManager:
    SPAWN_ATTEMPTS = 2

    def __init__(
        self,
        *,
        workspaces: WorkspaceStore,
        runner_factory: RunnerFactory,
        payloads: PayloadStore | None = None,
        inactivity_timeout_s: float = 30 * 60,
        sweep_interval_s: float = 300,
        on_inactive: InactiveCallback | None = None,
    ):
        self.workspaces = workspaces
        self.payloads = payloads
        self.inactivity_timeout = timedelta(seconds=inactivity_timeout_s)
        self.sweep_interval_s = sweep_interval_s
        self.on_inactive = on_inactive
        self._runner_factory = runner_factory
        self._sessions: dict[str, Session] = {}
        self._starting: set[str] = set()
        self._sweep_task: asyncio.Task | None = None

    # -- lookup -----------------------------------------------------------

    def get(self, thread_id: str) -> Session | None:
        return self._sessions.get(thread_id)

    def get_or_create(self, thread_id: str) -> Session | None:
        """Return the thread's session, creating it from its workspace mapping.

        None means the thread has no workspace mapping.
        """
        session = self._sessions.get(thread_id)
        if session is not None:
            return session

        ws = self.workspaces.get(thread_id)
        if ws is None:
            return None

        session = Session(
            thread_id=thread_id,
            channel_id=ws.channel_id,
            directory=ws.directory,
            project_name=ws.project_name,
            autopilot=ws.autopilot,
            created_at=ws.created_at,
            last_activity_at=utcnow(),
            session_id=ws.session_id,
        )
        self._sessions[thread_id] = session
        log.info("Session created for thread %s (%s)", thread_id, ws.project_name)
        return session

    def touch(self, thread_id: str) -> None:
        session = self._sessions.get(thread_id)
        if session is not None:
            session.last_activity_at = utcnow()

    def is_busy(self, thread_id: str) -> bool:
        if thread_id in self._starting:
            return True
        session = self._sessions.get(thread_id)
        return session is not None and session.is_running

    def list_active(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_running)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    # -- persisted fields -------------------------------------------------

    def record_session_id(self, thread_id: str, session_id: str) -> None:
        session = self._sessions.get(thread_id)
        if session is not None:
            session.session_id = session_id
        self.workspaces.update(thread_id, session_id=session_id)

    def set_autopilot(self, thread_id: str, enabled: bool) -> bool:
        session = self._sessions.get(thread_id)
        if session is not None:
            session.autopilot = enabled
        return self.workspaces.update(thread_id, autopilot=enabled) is not None

    # -- runner lifecycle -------------------------------------------------

    async def start_run(self, thread_id: str, prompt: str) -> tuple[Session, Runner]:
        """Spawn a runner for the thread.

        Raises SessionBusy if a runner is live or starting, WorkspaceNotFound
        without a mapping, RunnerSpawnError after all spawn attempts failed.
        """
        if self.is_busy(thread_id):
            raise SessionBusy(thread_id)

        existed = thread_id in self._sessions
        session = self.get_or_create(thread_id)
        if session is None:
            raise WorkspaceNotFound(thread_id)
        if not Path(session.directory).is_dir():
            if not existed:
                self._sessions.pop(thread_id, None)
            raise ConfigurationError(
                f"Working directory no longer exists: {session.directory}"
            )

        self._starting.add(thread_id)
        try:
            runner = await self._spawn(session, prompt)
        except RunnerSpawnError:
            if not existed and self._sessions.get(thread_id) is session:
                del self._sessions[thread_id]
            raise
        finally:
            self._starting.discard(thread_id)

        if self._sessions.get(thread_id) is not session:
            # Terminated while we were spawning.
            await runner.kill()
            raise RunnerError(f"Session for thread {thread_id} ended while starting")

        session.runner = runner
        session.last_activity_at = utcnow()
        return session, runner

    async def _spawn(self, session: Session, prompt: str) -> Runner:
        last_exc: RunnerSpawnError | None = None
        for attempt in range(1, self.SPAWN_ATTEMPTS + 1):
            runner = self._runner_factory(
                session.directory, session.thread_id, session.session_id
            )
            try:
                await runner.start(prompt)
                return runner
            except RunnerSpawnError as e:
                last_exc = e
                log.warning(
                    "Spawn attempt %d/%d for thread %s failed: %s",
                    attempt,
                    self.SPAWN_ATTEMPTS,
                    session.thread_id,
                    e,
                )
        assert last_exc is not None
        raise last_exc

    async def terminate(
        self, thread_id: str, reason: str, *, runner: Runner | None = None
    ) -> bool:
        """Kill the thread's runner and drop its in-memory session.

        With `runner` given this is a no-op unless that runner is still the
        session's current one.
        """
        session = self._sessions.get(thread_id)
        if session is None:
            return False
        if runner is not None and session.runner is not runner:
            return False

        del self._sessions[thread_id]
        current, session.runner = session.runner, None
        log.info("Terminating session %s (%s)", thread_id, reason)
        if current is not None:
            await current.kill()
        return True

    # -- sweep ------------------------------------------------------------

    async def run_sweep(self, now: datetime | None = None) -> SweepReport:
        """Evict expired mappings and payloads, stop inactive runners."""
        now = now or utcnow()

        # A live run keeps its mapping; the inactivity check below covers it.
        busy = {s.thread_id for s in self._sessions.values() if s.is_running}
        evicted = self.workspaces.run_sweep(now, keep=busy)
        for thread_id in evicted:
            await self.terminate(thread_id, "workspace mapping expired")

        expired_payloads = self.payloads.run_sweep(now) if self.payloads else 0

        inactive: list[str] = []
        for session in list(self._sessions.values()):
            last = session.last_activity_at
            runner = session.runner
            if runner is not None and runner.last_event_at and runner.last_event_at > last:
                last = runner.last_event_at
            if now - last <= self.inactivity_timeout:
                continue

            was_running = session.is_running
            await self.terminate(session.thread_id, "inactive", runner=runner)
            if not was_running:
                continue
            inactive.append(session.thread_id)
            if self.on_inactive is not None:
                try:
                    await self.on_inactive(session)
                except Exception:
                    log.exception("Inactivity notice failed for %s", session.thread_id)

        return SweepReport(
            evicted_mappings=tuple(evicted),
            inactive=tuple(inactive),
            expired_payloads=expired_payloads,
        )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                report = await self.run_sweep()
            except Exception:
                log.exception("Session sweep failed")
                continue
            if report.inactive or report.evicted_mappings:
                log.info(
                    "Sweep: %d inactive runner(s) stopped, %d mapping(s) evicted",
                    len(report.inactive),
                    len(report.evicted_mappings),
                )

    def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def shutdown(self) -> None:
        """Stop the sweep and terminate every session."""
        await self.stop()
        thread_ids = list(self._sessions)
        if thread_ids:
            log.info("Terminating %d session(s) for shutdown", len(thread_ids))
        results = await asyncio.gather(
            *(self.terminate(t, "shutdown") for t in thread_ids),
            return_exceptions=True,
        )
        for thread_id, res in zip(thread_ids, results):
            if isinstance(res, BaseException):
                log.error("Failed to terminate %s on shutdown: %r", thread_id, res)
