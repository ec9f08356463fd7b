import asyncio
from datetime import timedelta

import pytest

from conftest import FakeRunnerFactory
from threadpilot.errors import (
    ConfigurationError,
    RunnerSpawnError,
    SessionBusy,
    WorkspaceNotFound,
)
from threadpilot.sessions import SessionManager
from threadpilot.stores import PayloadStore, Workspace, WorkspaceStore
from threadpilot.stores.base import utcnow


def _manager(tmp_path, factory, **kwargs):
    workspaces = WorkspaceStore(tmp_path / "workspaces.json")
    payloads = PayloadStore(tmp_path / "payloads.json")
    return SessionManager(
        workspaces=workspaces, runner_factory=factory, payloads=payloads, **kwargs
    )


def _map(manager, project_dir, thread_id="t1", **kwargs):
    manager.workspaces.add(
        thread_id,
        Workspace(
            directory=str(project_dir), project_name="proj", channel_id="chan", **kwargs
        ),
    )


@pytest.mark.asyncio
async def test_start_run_spawns_runner_with_persisted_session_id(tmp_path, project_dir):
    factory = FakeRunnerFactory()
    manager = _manager(tmp_path, factory)
    _map(manager, project_dir, session_id="sess-1")

    session, runner = await manager.start_run("t1", "do it")

    assert runner is factory.last
    assert runner.prompts == ["do it"]
    assert runner.resume_session_id == "sess-1"
    assert runner.working_dir == str(project_dir)
    assert session.runner is runner
    assert manager.is_busy("t1")
    assert manager.list_active() == 1


@pytest.mark.asyncio
async def test_second_start_while_running_is_rejected(tmp_path, project_dir):
    factory = FakeRunnerFactory()
    manager = _manager(tmp_path, factory)
    _map(manager, project_dir)

    await manager.start_run("t1", "first")
    with pytest.raises(SessionBusy):
        await manager.start_run("t1", "second")
    assert len(factory.runners) == 1


@pytest.mark.asyncio
async def test_concurrent_starts_spawn_one_runner(tmp_path, project_dir):
    factory = FakeRunnerFactory()
    manager = _manager(tmp_path, factory)
    _map(manager, project_dir)

    results = await asyncio.gather(
        manager.start_run("t1", "a"), manager.start_run("t1", "b"), return_exceptions=True
    )

    assert sum(1 for r in results if isinstance(r, SessionBusy)) == 1
    assert len([r for r in factory.runners if r.is_alive]) == 1


@pytest.mark.asyncio
async def test_unmapped_thread_raises(tmp_path):
    manager = _manager(tmp_path, FakeRunnerFactory())
    with pytest.raises(WorkspaceNotFound):
        await manager.start_run("nope", "hi")


@pytest.mark.asyncio
async def test_missing_directory_raises_configuration_error(tmp_path):
    manager = _manager(tmp_path, FakeRunnerFactory())
    _map(manager, tmp_path / "gone")
    with pytest.raises(ConfigurationError):
        await manager.start_run("t1", "hi")
    assert manager.get("t1") is None


@pytest.mark.asyncio
async def test_spawn_is_retried_once(tmp_path, project_dir):
    factory = FakeRunnerFactory(failures=1)
    manager = _manager(tmp_path, factory)
    _map(manager, project_dir)

    _, runner = await manager.start_run("t1", "hi")
    assert len(factory.runners) == 2
    assert runner.is_alive


@pytest.mark.asyncio
async def test_spawn_failure_leaves_no_session(tmp_path, project_dir):
    factory = FakeRunnerFactory(failures=2)
    manager = _manager(tmp_path, factory)
    _map(manager, project_dir)

    with pytest.raises(RunnerSpawnError):
        await manager.start_run("t1", "hi")
    assert manager.get("t1") is None
    assert not manager.is_busy("t1")

    # The mapping survives, so a later message can try again.
    _, runner = await manager.start_run("t1", "again")
    assert runner.prompts == ["again"]


@pytest.mark.asyncio
async def test_terminate_with_stale_runner_is_a_noop(tmp_path, project_dir):
    factory = FakeRunnerFactory()
    manager = _manager(tmp_path, factory)
    _map(manager, project_dir)

    _, first = await manager.start_run("t1", "one")
    assert await manager.terminate("t1", "stop")
    assert first.kills == 1
    _, second = await manager.start_run("t1", "two")

    assert await manager.terminate("t1", "late cleanup", runner=first) is False
    assert second.is_alive
    assert manager.get("t1").runner is second


@pytest.mark.asyncio
async def test_sweep_stops_inactive_runner_and_notifies(tmp_path, project_dir):
    factory = FakeRunnerFactory()
    notified = []

    async def on_inactive(session):
        notified.append(session.thread_id)

    manager = _manager(
        tmp_path, factory, inactivity_timeout_s=30 * 60, on_inactive=on_inactive
    )
    _map(manager, project_dir)
    _, runner = await manager.start_run("t1", "hi")

    report = await manager.run_sweep(utcnow() + timedelta(minutes=10))
    assert report.inactive == ()
    assert runner.is_alive

    report = await manager.run_sweep(utcnow() + timedelta(minutes=31))
    assert report.inactive == ("t1",)
    assert notified == ["t1"]
    assert runner.kills == 1
    assert manager.get("t1") is None
    # The mapping outlives the runner so the thread can resume.
    assert manager.workspaces.get("t1") is not None


@pytest.mark.asyncio
async def test_sweep_keeps_expired_mapping_until_run_ends(tmp_path, project_dir):
    factory = FakeRunnerFactory()
    manager = _manager(tmp_path, factory)
    _map(manager, project_dir, created_at=utcnow() - timedelta(hours=25))
    _, runner = await manager.start_run("t1", "hi")

    report = await manager.run_sweep()

    assert report.evicted_mappings == ()
    assert runner.is_alive
    assert runner.kills == 0
    assert manager.workspaces.get("t1") is not None

    runner.finish()
    report = await manager.run_sweep()

    assert report.evicted_mappings == ("t1",)
    assert manager.workspaces.get("t1") is None
    assert manager.get("t1") is None


@pytest.mark.asyncio
async def test_record_session_id_and_autopilot_write_through(tmp_path, project_dir):
    manager = _manager(tmp_path, FakeRunnerFactory())
    _map(manager, project_dir)
    await manager.start_run("t1", "hi")

    manager.record_session_id("t1", "sess-2")
    assert manager.set_autopilot("t1", True)
    assert manager.set_autopilot("unknown", True) is False

    reloaded = WorkspaceStore(tmp_path / "workspaces.json").get("t1")
    assert reloaded.session_id == "sess-2"
    assert reloaded.autopilot is True
    assert manager.get("t1").autopilot is True


@pytest.mark.asyncio
async def test_shutdown_kills_everything(tmp_path, project_dir):
    factory = FakeRunnerFactory()
    manager = _manager(tmp_path, factory, sweep_interval_s=3600)
    _map(manager, project_dir, thread_id="t1")
    _map(manager, project_dir, thread_id="t2")
    manager.start()
    await manager.start_run("t1", "a")
    await manager.start_run("t2", "b")

    await manager.shutdown()

    assert manager.sessions() == []
    assert all(not r.is_alive for r in factory.runners)
