"""Spawning worker processes with an attached message channel."""

from __future__ import annotations

import asyncio
import os
import signal
import socket
import sys
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from startserver.core.models import ReloadMode, ScriptReference, SupervisorConfig
from startserver.runtime.channel import (
    CHANNEL_FD_ENV,
    HOT_ENV,
    HOT_ROOT_ENV,
    RELOAD_SIGNAL_ENV,
    ChannelMessage,
    decode_message,
    encode_message,
)

# A worker chatting on the channel should never need more than this per line.
CHANNEL_LINE_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class WorkerObservers:
    """Callbacks registered for one spawned process."""

    on_exit: Callable[[Optional[int], Optional[str]], None]
    on_error: Callable[[BaseException], None]
    on_message: Callable[[ChannelMessage], None]


class WorkerProcess(Protocol):
    pid: int

    def send(self, message: ChannelMessage) -> None:
        ...

    def send_signal(self, signum: int) -> None:
        ...

    def close(self) -> None:
        ...

    async def wait(self) -> None:
        ...


class WorkerSpawner(Protocol):
    async def spawn(
        self,
        script: ScriptReference,
        config: SupervisorConfig,
        observers: WorkerObservers,
    ) -> WorkerProcess:
        ...


def build_worker_env(config: SupervisorConfig, script: ScriptReference, channel_fd: int) -> Dict[str, str]:
    """Environment for the worker: configured (or inherited) variables plus channel wiring."""
    env = dict(os.environ if config.env is None else config.env)
    env[CHANNEL_FD_ENV] = str(channel_fd)

    if config.reload_mode == ReloadMode.NONE:
        env.pop(HOT_ENV, None)
    else:
        env[HOT_ENV] = "1"
        env.setdefault(HOT_ROOT_ENV, os.path.dirname(script.path))

    if config.reload_mode == ReloadMode.SIGNAL:
        env[RELOAD_SIGNAL_ENV] = config.reload_signal
    else:
        env.pop(RELOAD_SIGNAL_ENV, None)

    return env


def describe_returncode(returncode: int) -> tuple[Optional[int], Optional[str]]:
    """Split an asyncio return code into (exit code, signal name)."""
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, str(-returncode)


class SubprocessWorker:
    """A spawned worker: the asyncio process plus the parent end of its channel."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        observers: WorkerObservers,
        drain_timeout: float = 1.0,
    ) -> None:
        self.pid = process.pid
        self._process = process
        self._reader = reader
        self._writer = writer
        self._observers = observers
        self._drain_timeout = drain_timeout
        self._pump: Optional[asyncio.Task[None]] = None
        self._waiter: Optional[asyncio.Task[None]] = None

    def start(self) -> None:
        self._pump = asyncio.create_task(self._pump_messages(), name=f"worker-{self.pid}-channel")
        self._waiter = asyncio.create_task(self._wait_for_exit(), name=f"worker-{self.pid}-waiter")

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    def send(self, message: ChannelMessage) -> None:
        if self._writer.is_closing():
            raise BrokenPipeError(f"channel to worker pid={self.pid} is closed")
        self._writer.write(encode_message(message))

    def send_signal(self, signum: int) -> None:
        # The pid may already be reaped and reused once a return code exists.
        if self._process.returncode is not None:
            raise ProcessLookupError(f"worker pid={self.pid} has already exited")
        os.kill(self.pid, signum)

    def close(self) -> None:
        if not self._writer.is_closing():
            self._writer.close()

    async def wait(self) -> None:
        if self._waiter is not None:
            await asyncio.shield(self._waiter)

    async def _pump_messages(self) -> None:
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                self._observers.on_message(decode_message(line))
        except (OSError, ValueError) as exc:
            self._observers.on_error(exc)

    async def _wait_for_exit(self) -> None:
        returncode = await self._process.wait()

        # Deliver whatever the worker said before dying (e.g. HMR_FAIL) ahead of the exit.
        if self._pump is not None:
            done, _ = await asyncio.wait({self._pump}, timeout=self._drain_timeout)
            if not done:
                self._pump.cancel()

        self.close()
        code, signal_name = describe_returncode(returncode)
        self._observers.on_exit(code, signal_name)


class SubprocessSpawner:
    """Starts workers with ``asyncio.create_subprocess_exec`` and a socketpair channel."""

    def __init__(self, executable: Optional[str] = None, drain_timeout: float = 1.0) -> None:
        self.executable = executable or sys.executable
        self.drain_timeout = drain_timeout

    async def spawn(
        self,
        script: ScriptReference,
        config: SupervisorConfig,
        observers: WorkerObservers,
    ) -> SubprocessWorker:
        parent_sock, child_sock = socket.socketpair()
        try:
            child_fd = child_sock.fileno()
            process = await asyncio.create_subprocess_exec(
                *script.command(self.executable),
                env=build_worker_env(config, script, child_fd),
                cwd=config.cwd,
                pass_fds=(child_fd,),
            )
        except BaseException:
            parent_sock.close()
            raise
        finally:
            # The worker owns its end now; keeping it open here would hide EOF.
            child_sock.close()

        try:
            reader, writer = await asyncio.open_connection(sock=parent_sock, limit=CHANNEL_LINE_LIMIT)
        except BaseException:
            parent_sock.close()
            process.kill()
            raise

        worker = SubprocessWorker(process, reader, writer, observers, drain_timeout=self.drain_timeout)
        worker.start()
        return worker
