import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to sys.path
# This ensures that 'threadpilot' is importable as a top-level package during tests
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from threadpilot.config import Config  # noqa: E402
from threadpilot.errors import RunnerSpawnError  # noqa: E402
from threadpilot.runners.events import ExitInfo  # noqa: E402
from threadpilot.stores.base import utcnow  # noqa: E402


class FakeChat:
    """Records everything the bot would send; hands out sequential ids."""

    def __init__(self):
        self.posts: list[dict] = []
        self.updates: list[dict] = []
        self.ephemerals: list[dict] = []
        self.modals: list[dict] = []
        self._seq = 0

    def _next_ts(self) -> str:
        self._seq += 1
        return f"ts{self._seq}"

    async def post_message(self, channel_id, text, *, thread_id=None, buttons=()):
        ts = self._next_ts()
        self.posts.append(
            {
                "ts": ts,
                "channel_id": channel_id,
                "text": text,
                "thread_id": thread_id,
                "buttons": list(buttons),
            }
        )
        return ts

    async def update_message(self, channel_id, message_ts, text, *, thread_id=None, buttons=()):
        self.updates.append(
            {
                "ts": message_ts,
                "channel_id": channel_id,
                "text": text,
                "thread_id": thread_id,
                "buttons": list(buttons),
            }
        )

    async def post_ephemeral(self, channel_id, user_id, text, *, thread_id=None):
        self.ephemerals.append(
            {"channel_id": channel_id, "user_id": user_id, "text": text, "thread_id": thread_id}
        )

    async def open_modal(self, trigger_id, *, callback_id, title, prompt, metadata):
        self.modals.append(
            {
                "trigger_id": trigger_id,
                "callback_id": callback_id,
                "title": title,
                "prompt": prompt,
                "metadata": metadata,
            }
        )

    def posts_with_buttons(self) -> list[dict]:
        return [p for p in self.posts if p["buttons"]]


class FakeRunner:
    """In-memory runner: tests push events and inspect what was written back."""

    def __init__(self, working_dir, thread_id, resume_session_id, *, fail_start=False):
        self.working_dir = working_dir
        self.thread_id = thread_id
        self.resume_session_id = resume_session_id
        self.fail_start = fail_start
        self.prompts: list[str] = []
        self.sent: list[dict] = []
        self.answers: list[tuple[str | None, str]] = []
        self.interrupts = 0
        self.kills = 0
        self.last_event_at = None
        self._alive = False
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def session_id(self):
        return self.resume_session_id

    @property
    def is_alive(self):
        return self._alive

    @property
    def tool_count(self):
        return 0

    async def start(self, prompt):
        if self.fail_start:
            raise RunnerSpawnError("spawn failed", binary="fake-claude")
        self.prompts.append(prompt)
        self._alive = True

    def push(self, event):
        self.last_event_at = utcnow()
        self._queue.put_nowait(event)

    def finish(self):
        if self._alive:
            self._alive = False
            self._queue.put_nowait(None)

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def wait(self):
        return ExitInfo(returncode=0)

    async def send(self, payload):
        if not self._alive:
            return False
        self.sent.append(payload)
        return True

    async def send_text(self, text):
        return await self.send({"type": "user", "text": text})

    async def answer_tool(self, tool_use_id, text):
        if not self._alive:
            return False
        self.answers.append((tool_use_id, text))
        return True

    async def interrupt(self):
        self.interrupts += 1
        return self._alive

    async def kill(self, graceful=True):
        if not self._alive:
            return
        self.kills += 1
        self.finish()


class FakeRunnerFactory:
    def __init__(self, *, failures: int = 0):
        self.failures = failures
        self.runners: list[FakeRunner] = []

    def __call__(self, working_dir, thread_id, resume_session_id):
        fail = self.failures > 0
        if fail:
            self.failures -= 1
        runner = FakeRunner(working_dir, thread_id, resume_session_id, fail_start=fail)
        self.runners.append(runner)
        return runner

    @property
    def last(self) -> FakeRunner:
        return self.runners[-1]


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is truthy; lets background driver tasks run."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_chat():
    return FakeChat()


@pytest.fixture
def runner_factory():
    return FakeRunnerFactory()


@pytest.fixture
def project_dir(tmp_path):
    path = tmp_path / "proj"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path):
    return Config(
        data_dir=tmp_path / "data",
        base_dir=tmp_path,
        claude_bin="claude",
        inactivity_timeout_s=30 * 60,
        sweep_interval_s=300,
        kill_grace_s=1.0,
    )
