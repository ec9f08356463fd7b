import pytest

from conftest import FakeRunnerFactory
from threadpilot.chat.ports import InboundMessage
from threadpilot.orchestrator import Orchestrator


def _msg(text, thread_id=None):
    return InboundMessage("chan", "alice", text, "m1", thread_id=thread_id)


@pytest.fixture
def orch(config, fake_chat):
    return Orchestrator(config, fake_chat, runner_factory=FakeRunnerFactory())


@pytest.mark.asyncio
async def test_init_maps_channel_to_directory(orch, fake_chat, project_dir):
    await orch.handle_message(_msg(f"/init {project_dir}"))

    mapping = orch.channels.get("chan")
    assert mapping.directory == str(project_dir.resolve())
    assert mapping.project_name == "proj"
    assert str(project_dir.resolve()) in fake_chat.posts[-1]["text"]


@pytest.mark.asyncio
async def test_init_resolves_relative_to_base_dir(orch, project_dir):
    await orch.handle_message(_msg("/init proj"))
    assert orch.channels.get("chan").directory == str(project_dir.resolve())


@pytest.mark.asyncio
async def test_init_rejects_missing_directory(orch, fake_chat, tmp_path):
    await orch.handle_message(_msg(f"/init {tmp_path / 'nope'}"))
    assert orch.channels.get("chan") is None
    assert "not found" in fake_chat.ephemerals[-1]["text"]


@pytest.mark.asyncio
async def test_task_requires_init(orch, fake_chat):
    await orch.handle_message(_msg("/task do things"))
    assert fake_chat.posts == []
    assert "/init" in fake_chat.ephemerals[-1]["text"]


@pytest.mark.asyncio
async def test_task_with_autopilot_flag(orch, fake_chat, project_dir):
    await orch.handle_message(_msg(f"/init {project_dir}"))
    await orch.handle_message(_msg("/task --autopilot write the docs"))

    thread_id = fake_chat.posts[-1]["ts"]
    ws = orch.workspaces.get(thread_id)
    assert ws.autopilot is True
    assert ws.channel_id == "chan"
    assert orch.sessions.get(thread_id).runner.prompts == ["write the docs"]
    await orch.shutdown()


@pytest.mark.asyncio
async def test_tasks_is_not_task(orch, fake_chat):
    await orch.handle_message(_msg("/tasks"))
    assert orch.workspaces.items() == []
    assert "/task" in fake_chat.ephemerals[-1]["text"]


@pytest.mark.asyncio
async def test_stop_and_cancel(orch, fake_chat, project_dir):
    await orch.handle_message(_msg(f"/init {project_dir}"))
    await orch.handle_message(_msg("/task one"))
    thread_id = fake_chat.posts[-1]["ts"]
    runner = orch.sessions.get(thread_id).runner

    await orch.handle_message(_msg("/cancel", thread_id=thread_id))

    assert not runner.is_alive
    assert "Stopped" in fake_chat.posts[-1]["text"]

    await orch.handle_message(_msg("/stop", thread_id=thread_id))
    assert "Nothing running" in fake_chat.ephemerals[-1]["text"]


@pytest.mark.asyncio
async def test_autopilot_toggle(orch, fake_chat, project_dir):
    await orch.handle_message(_msg(f"/init {project_dir}"))
    await orch.handle_message(_msg("/task one"))
    thread_id = fake_chat.posts[-1]["ts"]

    await orch.handle_message(_msg("/autopilot on", thread_id=thread_id))
    assert orch.workspaces.get(thread_id).autopilot is True
    await orch.handle_message(_msg("/autopilot off", thread_id=thread_id))
    assert orch.workspaces.get(thread_id).autopilot is False

    await orch.handle_message(_msg("/autopilot maybe", thread_id=thread_id))
    assert "Usage" in fake_chat.ephemerals[-1]["text"]
    await orch.shutdown()


@pytest.mark.asyncio
async def test_status_and_help(orch, fake_chat, project_dir):
    await orch.handle_message(_msg("/status"))
    assert "Running tasks: 0" in fake_chat.ephemerals[-1]["text"]
    assert "(none)" in fake_chat.ephemerals[-1]["text"]

    await orch.handle_message(_msg("/help"))
    assert "/task" in fake_chat.ephemerals[-1]["text"]
