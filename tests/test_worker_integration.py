"""Spawns real Python workers through the monitor bootstrap."""

import asyncio
import os
import sys
from pathlib import Path

import pytest

from startserver.core.models import ScriptReference
from startserver.runtime.reload_contracts import LoadState, ReloadSessionState
from startserver.runtime.spawner import SubprocessSpawner
from startserver.runtime.supervisor import EventKind, ProcessSupervisor

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs fd passing and POSIX signals")

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

SERVER = """
import time

import greeting
from startserver import notify_loaded

notify_loaded()
while True:
    time.sleep(0.05)
"""


async def _wait_for(predicate, timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def _bump(path: Path, content: str, offset: int) -> None:
    path.write_text(content)
    stat = path.stat()
    os.utime(path, (stat.st_atime + offset, stat.st_mtime + offset))


def _worker_env() -> dict:
    env = dict(os.environ)
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = f"{SRC_DIR}{os.pathsep}{existing}" if existing else str(SRC_DIR)
    return env


@pytest.mark.anyio
async def test_real_worker_loads_reloads_and_fails_cleanly(tmp_path):
    (tmp_path / "greeting.py").write_text("MESSAGE = 'v1'\n")
    server = tmp_path / "server.py"
    server.write_text(SERVER)

    supervisor = ProcessSupervisor({"env": _worker_env(), "reload_timeout": 10}, spawner=SubprocessSpawner())
    try:
        handle = await supervisor.launch(ScriptReference(path=str(server)))
        assert handle is not None
        await _wait_for(lambda: handle.load_state == LoadState.LOADED)

        _bump(tmp_path / "greeting.py", "MESSAGE = 'v2'\n", 10)
        assert await supervisor.request_reload() == ReloadSessionState.ACKNOWLEDGED
        assert supervisor.worker is handle

        _bump(tmp_path / "greeting.py", "MESSAGE = (\n", 20)
        assert await supervisor.request_reload() == ReloadSessionState.REJECTED

        # The worker quits with the reload-failure status and is not restarted by the supervisor.
        await _wait_for(lambda: supervisor.worker is None)
        kinds = [event.kind for event in supervisor.events]
        assert EventKind.HMR_EXIT in kinds
        assert kinds[-1] == EventKind.UNEXPECTED_EXIT
        assert supervisor.events[-1].error.code == 222
    finally:
        await supervisor.shutdown()


@pytest.mark.anyio
async def test_real_worker_is_terminated_by_ensure_stopped(tmp_path):
    (tmp_path / "greeting.py").write_text("MESSAGE = 'v1'\n")
    server = tmp_path / "server.py"
    server.write_text(SERVER)

    supervisor = ProcessSupervisor({"env": _worker_env()}, spawner=SubprocessSpawner())
    handle = await supervisor.launch(ScriptReference(path=str(server)))
    await _wait_for(lambda: handle.load_state == LoadState.LOADED)

    supervisor.ensure_stopped()
    await asyncio.wait_for(handle.process.wait(), timeout=10)

    assert handle.process.returncode is not None
    assert supervisor.worker is None
    assert supervisor.events[-1].kind == EventKind.EXITED
