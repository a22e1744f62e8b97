import asyncio
import pytest
import sys
from pathlib import Path
from typing import List, Optional

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from startserver.core.models import BuildOutput, ScriptReference
from startserver.runtime.channel import ChannelMessage, MessageKind


class FakeWorkerProcess:
    """In-memory stand-in for a spawned worker; tests drive its observers directly."""

    def __init__(self, pid: int, observers):
        self.pid = pid
        self.observers = observers
        self.sent: List[ChannelMessage] = []
        self.signals: List[int] = []
        self.closed = False
        self.gone = False
        self.signal_error: Optional[OSError] = None
        self.send_error: Optional[OSError] = None
        self._exited = asyncio.Event()

    def send(self, message: ChannelMessage) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    def send_signal(self, signum: int) -> None:
        if self.gone:
            raise ProcessLookupError(self.pid)
        if self.signal_error is not None:
            raise self.signal_error
        self.signals.append(signum)

    def close(self) -> None:
        self.closed = True

    async def wait(self) -> None:
        await self._exited.wait()

    # Helpers for tests

    def say(self, kind: MessageKind, detail: Optional[str] = None) -> None:
        self.observers.on_message(ChannelMessage.of(kind, detail))

    def exit(self, code: Optional[int] = 0, signal_name: Optional[str] = None) -> None:
        self.gone = True
        self._exited.set()
        self.observers.on_exit(code, signal_name)

    def fail(self, exc: BaseException) -> None:
        self.observers.on_error(exc)


class FakeSpawner:
    def __init__(self):
        self.processes: List[FakeWorkerProcess] = []
        self.scripts: List[ScriptReference] = []
        self.fail_with: Optional[BaseException] = None

    @property
    def calls(self) -> int:
        return len(self.scripts)

    @property
    def last(self) -> FakeWorkerProcess:
        return self.processes[-1]

    async def spawn(self, script, config, observers):
        self.scripts.append(script)
        if self.fail_with is not None:
            raise self.fail_with
        process = FakeWorkerProcess(pid=4000 + len(self.processes), observers=observers)
        self.processes.append(process)
        return process


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def root_dir(tmp_path):
    """
    Returns a temporary directory to act as the project root for tests.
    """
    return tmp_path


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def script():
    return ScriptReference(path="/build/server.py")


@pytest.fixture
def build():
    return BuildOutput(output_path="/build", entrypoints={"main": ["server.py"], "worker": ["worker.py"]})
