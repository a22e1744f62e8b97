import asyncio
import os
import signal

import pytest

from startserver.core.models import BuildOutput
from startserver.pipeline.hooks import BuildHooks
from startserver.runtime.channel import MessageKind
from startserver.runtime.controller import LifecycleCoordinator
from startserver.runtime.reload_contracts import ReloadSessionState
from startserver.runtime.supervisor import ProcessSupervisor
from startserver.utils.diagnostics import SupervisorDiagnostic, UnknownEntry


def _coordinator(spawner, options=None, **kwargs):
    supervisor = ProcessSupervisor(options, spawner=spawner)
    return LifecycleCoordinator(supervisor, **kwargs)


@pytest.mark.anyio
async def test_first_artifact_launches_worker(spawner, build):
    successes = []
    coordinator = _coordinator(spawner, on_reload_success=successes.append)

    event = await coordinator.on_artifact_ready(build)

    assert event.action == "launched"
    assert spawner.calls == 1
    assert spawner.scripts[0].path == os.path.abspath("/build/server.py")
    assert successes == [event]


@pytest.mark.anyio
async def test_loaded_worker_is_reloaded_in_place(spawner, build):
    coordinator = _coordinator(spawner)
    await coordinator.on_artifact_ready(build)
    spawner.last.say(MessageKind.LOADED)

    pending = asyncio.create_task(coordinator.on_artifact_ready(build))
    await asyncio.sleep(0)
    spawner.last.say(MessageKind.HMR_ACK)
    event = await pending

    assert event.action == "reloaded"
    assert event.session_state == ReloadSessionState.ACKNOWLEDGED
    assert spawner.calls == 1
    assert spawner.last.signals == []


@pytest.mark.anyio
async def test_failed_reload_falls_back_to_clean_relaunch(spawner, build):
    failures = []
    coordinator = _coordinator(spawner, on_reload_failure=failures.append)
    await coordinator.on_artifact_ready(build)
    first = spawner.last
    first.say(MessageKind.LOADED)

    pending = asyncio.create_task(coordinator.on_artifact_ready(build))
    await asyncio.sleep(0)
    first.say(MessageKind.HMR_FAIL)
    event = await pending

    assert event.action == "relaunched"
    assert event.session_state == ReloadSessionState.REJECTED
    assert first.signals == [signal.SIGTERM]
    assert spawner.calls == 2
    assert failures == [event]

    # The failed worker's own exit must not cause a second relaunch.
    first.exit(code=222)
    await coordinator.supervisor.settle()
    assert spawner.calls == 2


@pytest.mark.anyio
async def test_timed_out_reload_relaunches(spawner, build):
    coordinator = _coordinator(spawner, {"reload_timeout": 0.05})
    await coordinator.on_artifact_ready(build)
    spawner.last.say(MessageKind.LOADED)

    event = await coordinator.on_artifact_ready(build)

    assert event.session_state == ReloadSessionState.TIMED_OUT
    assert spawner.calls == 2


@pytest.mark.anyio
async def test_worker_not_yet_loaded_is_replaced(spawner, build):
    coordinator = _coordinator(spawner)
    await coordinator.on_artifact_ready(build)

    event = await coordinator.on_artifact_ready(build)

    assert event.action == "relaunched"
    assert spawner.processes[0].signals == [signal.SIGTERM]
    assert spawner.processes[0].sent == []
    assert spawner.calls == 2


@pytest.mark.anyio
async def test_unknown_entry_blocks_launch_and_is_reported(spawner, build):
    reported = []
    failures = []
    coordinator = _coordinator(spawner, "missing", report=reported.append, on_reload_failure=failures.append)

    event = await coordinator.on_artifact_ready(build)

    assert event.action == "blocked"
    assert spawner.calls == 0
    assert isinstance(reported[0], UnknownEntry)
    assert reported[0].known_entries == ["main", "worker"]
    assert failures == [event]


@pytest.mark.anyio
async def test_spawn_failure_is_a_failed_cycle(spawner, build):
    failures = []
    spawner.fail_with = PermissionError("denied")
    coordinator = _coordinator(spawner, on_reload_failure=failures.append)

    event = await coordinator.on_artifact_ready(build)

    assert event.error is not None
    assert "denied" in str(event.error)
    assert failures == [event]


@pytest.mark.anyio
async def test_invalidate_waits_for_artifact_by_default(spawner, build):
    coordinator = _coordinator(spawner)
    await coordinator.on_artifact_ready(build)

    coordinator.on_invalidate()

    assert coordinator.supervisor.is_live
    assert spawner.last.signals == []


@pytest.mark.anyio
async def test_invalidate_can_kill_immediately(spawner, build):
    coordinator = _coordinator(spawner, {"kill_on_invalidate": True})
    await coordinator.on_artifact_ready(build)

    coordinator.on_invalidate()

    assert coordinator.supervisor.worker is None
    assert spawner.last.signals == [signal.SIGTERM]


def test_should_emit_vetoes_builds_with_errors(spawner):
    broken = BuildOutput(
        output_path="/build",
        entrypoints={"main": ["server.py"]},
        errors=[SupervisorDiagnostic(file_path="server.py", error_code="E1", message="syntax error")],
    )

    assert _coordinator(spawner).should_emit(broken) is False
    assert _coordinator(spawner, {"emit_on_errors": True}).should_emit(broken) is True
    assert _coordinator(spawner).should_emit(BuildOutput(output_path="/build")) is True


@pytest.mark.anyio
async def test_console_keyword_requires_restartable(spawner, build):
    coordinator = _coordinator(spawner, {"restartable": False})
    await coordinator.on_artifact_ready(build)

    assert await coordinator.handle_console_line("rs\n") is False
    assert coordinator.supervisor.is_live


@pytest.mark.anyio
async def test_console_keyword_is_disabled_for_run_once(spawner, build):
    coordinator = _coordinator(spawner, {"restartable": True, "once": True})
    await coordinator.on_artifact_ready(build)

    assert await coordinator.handle_console_line("rs") is False


@pytest.mark.anyio
async def test_console_keyword_restarts_the_worker_in_one_step(spawner, build):
    coordinator = _coordinator(spawner, {"restartable": True})
    await coordinator.on_artifact_ready(build)
    first = spawner.last

    assert await coordinator.handle_console_line("hello") is False
    assert await coordinator.handle_console_line("rs\n") is True

    assert first.signals == [signal.SIGTERM]
    assert coordinator.supervisor.is_live
    assert coordinator.supervisor.worker.pid == spawner.last.pid != first.pid
    assert spawner.calls == 2


@pytest.mark.anyio
async def test_console_keyword_relaunches_when_no_worker_runs(spawner, build):
    coordinator = _coordinator(spawner, {"restartable": True})
    await coordinator.on_artifact_ready(build)
    coordinator.supervisor.ensure_stopped()

    assert await coordinator.handle_console_line("  rs  ") is True
    assert coordinator.supervisor.is_live
    assert spawner.calls == 2


@pytest.mark.anyio
async def test_bind_taps_every_hook_point(spawner, build):
    hooks = BuildHooks()
    coordinator = _coordinator(spawner, {"kill_on_invalidate": True})
    coordinator.bind(hooks)

    assert hooks.call_should_emit(build) is True
    await hooks.call_artifact_ready(build)
    assert coordinator.supervisor.is_live

    hooks.call_invalid()
    assert coordinator.supervisor.worker is None


def _build_for(script_name: str) -> BuildOutput:
    return BuildOutput(output_path="/build", entrypoints={"main": [script_name]})


async def _reload_to(coordinator, spawner, build):
    pending = asyncio.create_task(coordinator.on_artifact_ready(build))
    await asyncio.sleep(0)
    spawner.last.say(MessageKind.HMR_ACK)
    return await pending


@pytest.mark.anyio
async def test_crash_after_reload_relaunches_the_newest_script(spawner):
    coordinator = _coordinator(spawner)
    await coordinator.on_artifact_ready(_build_for("server.1.py"))
    spawner.last.say(MessageKind.LOADED)

    event = await _reload_to(coordinator, spawner, _build_for("server.2.py"))
    assert event.action == "reloaded"

    spawner.last.exit(code=1)
    await coordinator.supervisor.settle()

    assert spawner.calls == 2
    assert spawner.scripts[-1].path == os.path.abspath("/build/server.2.py")


@pytest.mark.anyio
async def test_console_keyword_after_reload_uses_the_newest_script(spawner):
    coordinator = _coordinator(spawner, {"restartable": True})
    await coordinator.on_artifact_ready(_build_for("server.1.py"))
    spawner.last.say(MessageKind.LOADED)
    await _reload_to(coordinator, spawner, _build_for("server.2.py"))

    assert await coordinator.handle_console_line("rs") is True

    assert spawner.scripts[-1].path == os.path.abspath("/build/server.2.py")


@pytest.mark.anyio
async def test_late_signal_reload_failure_relaunches_the_newest_script(spawner):
    coordinator = _coordinator(spawner, {"signal": True})
    await coordinator.on_artifact_ready(_build_for("server.1.py"))
    first = spawner.last
    first.say(MessageKind.LOADED)

    event = await coordinator.on_artifact_ready(_build_for("server.2.py"))
    assert event.action == "reloaded"

    first.say(MessageKind.HMR_FAIL, "declined by app.db")
    await coordinator.supervisor.settle()

    assert spawner.calls == 2
    assert spawner.scripts[-1].path == os.path.abspath("/build/server.2.py")
