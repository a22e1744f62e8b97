"""Process supervisor: owns the single worker slot and the reload protocol."""

from __future__ import annotations

import asyncio
import signal
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, Deque, Mapping, Optional, Set, Union

from startserver.core.models import ScriptReference, SupervisorConfig, load_supervisor_config
from startserver.runtime.channel import ChannelMessage, MessageKind
from startserver.runtime.reload_contracts import (
    HMR_FAIL_EXIT_CODE,
    LoadState,
    ReloadSessionState,
    WorkerEvent,
    WorkerState,
    transition_worker_state,
)
from startserver.runtime.spawner import SubprocessSpawner, WorkerObservers, WorkerProcess, WorkerSpawner
from startserver.runtime.transport import build_reload_transport
from startserver.utils.diagnostics import (
    ReloadRejected,
    ReloadTimedOut,
    SpawnFailure,
    StartServerError,
    TerminationFailed,
    UnexpectedExit,
)


class EventKind(str, Enum):
    SPAWNED = "spawned"
    SPAWN_FAILED = "spawn_failed"
    LOADED = "loaded"
    KILLING = "killing"
    TERMINATION_FAILED = "termination_failed"
    EXITED = "exited"
    UNEXPECTED_EXIT = "unexpected_exit"
    HMR_EXIT = "hmr_exit"
    CRASH_RESTART = "crash_restart"
    WORKER_ERROR = "worker_error"
    RELOAD_REQUESTED = "reload_requested"
    RELOAD_ACKNOWLEDGED = "reload_acknowledged"
    RELOAD_REJECTED = "reload_rejected"
    RELOAD_TIMED_OUT = "reload_timed_out"


@dataclass(frozen=True)
class SupervisorEvent:
    """Something the supervisor wants the host to know about."""

    kind: EventKind
    message: str
    pid: Optional[int] = None
    severity: str = "info"
    error: Optional[StartServerError] = None


@dataclass(eq=False)
class WorkerHandle:
    """The supervisor's view of one spawned worker process."""

    script: ScriptReference
    pid: Optional[int] = None
    process: Optional[WorkerProcess] = None
    live: bool = False
    load_state: LoadState = LoadState.UNKNOWN
    state: WorkerState = WorkerState.ABSENT

    def advance(self, event: WorkerEvent) -> WorkerState:
        self.state = transition_worker_state(self.state, event)
        return self.state


@dataclass(eq=False)
class ReloadSession:
    """One attempt to bring a live worker up to date without killing it."""

    handle: WorkerHandle
    future: asyncio.Future
    state: ReloadSessionState = ReloadSessionState.REQUESTED
    reason: Optional[StartServerError] = None

    @property
    def open(self) -> bool:
        return self.state == ReloadSessionState.REQUESTED

    def resolve(self, state: ReloadSessionState, reason: Optional[StartServerError] = None) -> bool:
        if not self.open:
            return False
        self.state = state
        self.reason = reason
        if not self.future.done():
            self.future.set_result(state)
        return True


EventReporter = Callable[[SupervisorEvent], None]


class ProcessSupervisor:
    """
    Keeps at most one worker process alive and in sync with the latest build.

    All methods run on a single asyncio event loop. Worker-side failures arrive
    through the exit/error/message observers and are reported as events; they
    never raise into the caller of a supervisor operation.
    """

    EVENT_HISTORY_LIMIT = 200

    def __init__(
        self,
        options: Union[None, str, Mapping, SupervisorConfig] = None,
        spawner: Optional[WorkerSpawner] = None,
        reporter: Optional[EventReporter] = None,
    ) -> None:
        self.config = load_supervisor_config(options)
        self.transport = build_reload_transport(self.config)
        self.spawner: WorkerSpawner = spawner or SubprocessSpawner()
        self.reporter = reporter

        self.worker: Optional[WorkerHandle] = None
        self.last_script: Optional[ScriptReference] = None
        self.reload_session: Optional[ReloadSession] = None
        self.events: Deque[SupervisorEvent] = deque(maxlen=self.EVENT_HISTORY_LIMIT)
        self.spawn_count = 0

        self._launch_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> WorkerState:
        return self.worker.state if self.worker is not None else WorkerState.ABSENT

    @property
    def is_live(self) -> bool:
        return self.worker is not None and self.worker.live

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ensure_stopped(self) -> None:
        """Best-effort termination of the current worker. Always leaves the slot empty."""
        handle = self.worker
        if handle is None:
            return

        try:
            self._emit(EventKind.KILLING, f"Killing worker pid={handle.pid}...", pid=handle.pid)
            self._terminate(handle)
        finally:
            handle.live = False
            handle.advance(WorkerEvent.KILL)
            self.worker = None
            self._close_session(handle, ReloadSessionState.REJECTED, ReloadRejected("worker was stopped"))

    def note_script(self, script: ScriptReference) -> None:
        """Record the script the live worker now runs after an in-place reload."""
        self.last_script = script
        if self.worker is not None:
            self.worker.script = script

    async def launch(self, script: ScriptReference) -> Optional[WorkerHandle]:
        """Spawn a worker for ``script`` and return its handle without waiting for it to load."""
        async with self._launch_lock:
            if self.worker is not None:
                self.ensure_stopped()

            self.last_script = script
            handle = WorkerHandle(script=script)
            observers = WorkerObservers(
                on_exit=lambda code, signal_name: self._handle_exit(handle, code, signal_name),
                on_error=lambda exc: self._handle_error(handle, exc),
                on_message=lambda message: self._handle_message(handle, message),
            )

            try:
                process = await self.spawner.spawn(script, self.config, observers)
            except (OSError, SpawnFailure) as exc:
                failure = exc if isinstance(exc, SpawnFailure) else SpawnFailure(f"Unable to start {script.path}: {exc}")
                self._emit(EventKind.SPAWN_FAILED, str(failure), severity="critical", error=failure)
                return None

            handle.pid = process.pid
            handle.process = process
            handle.live = True
            handle.advance(WorkerEvent.SPAWN)
            self.worker = handle
            self.spawn_count += 1
            self._emit(EventKind.SPAWNED, f"running `python {script.describe()}` (pid={handle.pid})", pid=handle.pid)
            return handle

    async def request_reload(self) -> ReloadSessionState:
        """Ask the live, loaded worker to apply the new build in place.

        Resolves to ``acknowledged``, ``rejected`` or ``timed_out``. A worker that
        exits or errors while the request is pending rejects it immediately.
        """
        handle = self.worker
        if handle is None or not handle.live or handle.load_state != LoadState.LOADED:
            self._emit(EventKind.RELOAD_REJECTED, "No loaded worker to reload", severity="debug")
            return ReloadSessionState.REJECTED

        session = self.reload_session
        if session is not None and session.open and session.handle is handle:
            return await asyncio.shield(session.future)

        session = ReloadSession(handle=handle, future=asyncio.get_running_loop().create_future())
        self.reload_session = session
        handle.advance(WorkerEvent.RELOAD_REQUESTED)
        self._emit(
            EventKind.RELOAD_REQUESTED,
            f"Requesting live reload of worker pid={handle.pid} via {self.transport.mode.value}",
            pid=handle.pid,
        )

        result = self.transport.deliver(handle)
        if result is not None:
            self._close_session(handle, result.state, result.reason)
            return session.state

        try:
            await asyncio.wait_for(asyncio.shield(session.future), timeout=self.config.reload_timeout)
        except asyncio.TimeoutError:
            self._close_session(
                handle,
                ReloadSessionState.TIMED_OUT,
                ReloadTimedOut(f"worker pid={handle.pid} did not answer within {self.config.reload_timeout}s"),
            )
        return session.state

    async def settle(self) -> None:
        """Wait for scheduled relaunches to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the worker, cancel pending relaunches and wait for the process to be reaped."""
        for task in list(self._tasks):
            task.cancel()

        handle = self.worker
        self.ensure_stopped()
        if handle is None or handle.process is None:
            return

        try:
            await asyncio.wait_for(handle.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self._emit(
                EventKind.TERMINATION_FAILED,
                f"Worker pid={handle.pid} still running {timeout}s after {self.config.kill_signal}",
                pid=handle.pid,
                severity="warning",
            )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def _handle_exit(self, handle: WorkerHandle, code: Optional[int], signal_name: Optional[str]) -> None:
        handle.live = False
        if handle.process is not None:
            handle.process.close()
        detail = _exit_detail(code, signal_name)
        self._close_session(handle, ReloadSessionState.REJECTED, ReloadRejected(f"worker exited with {detail}"))

        if handle is not self.worker:
            self._emit(EventKind.EXITED, f"Stopped worker pid={handle.pid} exited with {detail}", pid=handle.pid, severity="debug")
            return

        self.worker = None
        handle.advance(WorkerEvent.EXIT)

        if code == HMR_FAIL_EXIT_CODE:
            self._emit(
                EventKind.HMR_EXIT,
                f"Worker pid={handle.pid} quit because a live update could not be applied",
                pid=handle.pid,
                severity="warning",
            )

        if handle.load_state != LoadState.LOADED or self.config.run_once:
            failure = UnexpectedExit(handle.pid, code, signal_name)
            severity = "info" if self.config.run_once and code == 0 else "error"
            self._emit(EventKind.UNEXPECTED_EXIT, str(failure), pid=handle.pid, severity=severity, error=failure)
            return

        self._emit(
            EventKind.CRASH_RESTART,
            f"Worker pid={handle.pid} crashed after loading ({detail}); restarting",
            pid=handle.pid,
            severity="warning",
        )
        self._schedule(self.launch(self.last_script or handle.script))

    def _handle_error(self, handle: WorkerHandle, exc: BaseException) -> None:
        self._emit(EventKind.WORKER_ERROR, f"ERROR: {exc}", pid=handle.pid, severity="error")
        self._close_session(handle, ReloadSessionState.REJECTED, ReloadRejected(f"worker error: {exc}"))
        if handle is self.worker:
            # Exit stays the authoritative lifecycle signal; this only frees the slot.
            self.ensure_stopped()

    def _handle_message(self, handle: WorkerHandle, message: ChannelMessage) -> None:
        if handle is not self.worker or not handle.live:
            return

        if message.kind == MessageKind.LOADED:
            handle.load_state = LoadState.LOADED
            handle.advance(WorkerEvent.LOADED)
            self._emit(EventKind.LOADED, f"Worker pid={handle.pid} loaded", pid=handle.pid)

        elif message.kind == MessageKind.HMR_ACK:
            self._close_session(handle, ReloadSessionState.ACKNOWLEDGED)

        elif message.kind == MessageKind.HMR_FAIL:
            handle.load_state = LoadState.RELOAD_FAILED
            handle.advance(WorkerEvent.RELOAD_FAILED)
            reason = ReloadRejected(message.detail or f"worker pid={handle.pid} could not apply the update")
            if not self._close_session(handle, ReloadSessionState.REJECTED, reason):
                # Nobody is waiting (signal delivery): fall back to a clean relaunch here.
                self._emit(EventKind.RELOAD_REJECTED, str(reason), pid=handle.pid, severity="warning", error=reason)
                self.ensure_stopped()
                self._schedule(self.launch(self.last_script or handle.script))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _terminate(self, handle: WorkerHandle) -> None:
        if handle.process is None:
            return
        try:
            handle.process.send_signal(signal.Signals[self.config.kill_signal])
        except ProcessLookupError:
            return
        except OSError as exc:
            failure = TerminationFailed(handle.pid, exc)
            self._emit(EventKind.TERMINATION_FAILED, str(failure), pid=handle.pid, severity="warning", error=failure)

    def _close_session(
        self,
        handle: WorkerHandle,
        state: ReloadSessionState,
        reason: Optional[StartServerError] = None,
    ) -> bool:
        session = self.reload_session
        if session is None or session.handle is not handle or not session.resolve(state, reason):
            return False

        if state == ReloadSessionState.ACKNOWLEDGED:
            if handle.state == WorkerState.RELOAD_PENDING:
                handle.advance(WorkerEvent.RELOAD_ACKNOWLEDGED)
            self._emit(EventKind.RELOAD_ACKNOWLEDGED, f"Worker pid={handle.pid} applied the update", pid=handle.pid)
            return True

        if handle.live and handle.state == WorkerState.RELOAD_PENDING:
            handle.load_state = LoadState.RELOAD_FAILED
            handle.advance(WorkerEvent.RELOAD_FAILED)

        kind = EventKind.RELOAD_TIMED_OUT if state == ReloadSessionState.TIMED_OUT else EventKind.RELOAD_REJECTED
        self._emit(kind, str(reason) if reason else state.value, pid=handle.pid, severity="warning", error=reason)
        return True

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _emit(
        self,
        kind: EventKind,
        message: str,
        *,
        pid: Optional[int] = None,
        severity: str = "info",
        error: Optional[StartServerError] = None,
    ) -> SupervisorEvent:
        event = SupervisorEvent(kind=kind, message=message, pid=pid, severity=severity, error=error)
        self.events.append(event)
        if self.reporter is not None:
            self.reporter(event)
        return event


def _exit_detail(code: Optional[int], signal_name: Optional[str]) -> str:
    if signal_name:
        return f"signal {signal_name}"
    return f"code {code}"
