"""Worker-side half of the reload protocol."""

from __future__ import annotations

import os
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, Mapping, Optional

from startserver.cli.formatter import OutputFormatter
from startserver.monitor.hot import HotModuleRuntime, HotStatus, detect_hot_runtime
from startserver.runtime.channel import (
    READY_DELAY_ENV,
    RELOAD_SIGNAL_ENV,
    ChannelMessage,
    MessageKind,
    WorkerChannel,
)
from startserver.runtime.reload_contracts import HMR_FAIL_EXIT_CODE
from startserver.utils.diagnostics import HotUpdateFailed, HotUpdateRejected

DEFAULT_READY_DELAY = 0.5

_active_monitor: Optional["ReloadMonitor"] = None


def _hard_exit(code: int) -> None:
    # Called from helper threads, where sys.exit would only end the thread.
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(code)


class ReloadMonitor:
    """
    Runs inside the worker and answers the supervisor's reload requests.

    Without a hot runtime ``LOADED`` is sent as soon as the monitor is installed.
    With one it is sent once, when the application calls ``notify_loaded()`` or
    when the ready delay elapses, whichever comes first. The monitor then
    serves ``HMR_REQUEST`` messages (and the reload signal, when configured) by
    checking for changed modules and applying them until none are left.
    A failed update sends ``HMR_FAIL`` and ends the process with exit code 222
    so the supervisor starts a clean worker.
    """

    def __init__(
        self,
        channel: WorkerChannel,
        runtime: Optional[HotModuleRuntime] = None,
        reload_signal: Optional[str] = None,
        ready_delay: Optional[float] = DEFAULT_READY_DELAY,
        exit_process: Callable[[int], None] = _hard_exit,
    ) -> None:
        self.channel = channel
        self.runtime = runtime
        self.reload_signal = reload_signal
        self.ready_delay = ready_delay
        self.exit_process = exit_process

        self.loaded = False
        self._loaded_lock = threading.Lock()
        self._sequence_lock = threading.Lock()
        self._wake = threading.Event()
        self._closed = threading.Event()
        self._ready_timer: Optional[threading.Timer] = None
        self._signal_thread: Optional[threading.Thread] = None

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        entry_path: Optional[Path] = None,
        exit_process: Callable[[int], None] = _hard_exit,
    ) -> "ReloadMonitor":
        environ = os.environ if environ is None else environ
        try:
            ready_delay = float(environ.get(READY_DELAY_ENV, DEFAULT_READY_DELAY))
        except ValueError:
            ready_delay = DEFAULT_READY_DELAY

        return cls(
            channel=WorkerChannel.from_env(environ),
            runtime=detect_hot_runtime(environ, entry_path=entry_path),
            reload_signal=environ.get(RELOAD_SIGNAL_ENV) or None,
            ready_delay=ready_delay,
            exit_process=exit_process,
        )

    def install(self) -> "ReloadMonitor":
        """Register handlers and arm the ready timer. Signal handlers need the main thread."""
        global _active_monitor
        _active_monitor = self

        if self.runtime is None:
            # Every future update is a relaunch, so there is nothing to wait for.
            self.notify_loaded()
            return self

        OutputFormatter.log("Handling hot module reloading", severity="debug")
        self.channel.listen(self._on_message)
        if self.reload_signal:
            self._install_signal_handler(self.reload_signal)

        if self.ready_delay is not None:
            self._ready_timer = threading.Timer(max(self.ready_delay, 0.0), self.notify_loaded)
            self._ready_timer.daemon = True
            self._ready_timer.start()
        return self

    def close(self) -> None:
        global _active_monitor
        self._closed.set()
        self._wake.set()
        if self._ready_timer is not None:
            self._ready_timer.cancel()
        self.channel.close()
        if _active_monitor is self:
            _active_monitor = None

    def notify_loaded(self) -> bool:
        """Tell the supervisor the worker started up. Only the first call sends."""
        with self._loaded_lock:
            if self.loaded:
                return False
            self.loaded = True

        if self._ready_timer is not None:
            self._ready_timer.cancel()
        if self.runtime is not None:
            self.runtime.track()
        self.channel.send(ChannelMessage.of(MessageKind.LOADED))
        return True

    def request_update(self) -> bool:
        """Run one check-and-apply sequence unless one is already running.

        Returns False when the request was ignored.
        """
        if self.runtime is None or self.runtime.status() != HotStatus.IDLE:
            return False
        if not self._sequence_lock.acquire(blocking=False):
            return False
        try:
            return self.check_and_apply()
        finally:
            self._sequence_lock.release()

    def check_and_apply(self) -> bool:
        """Apply pending updates until none remain; returns True when the worker is up to date."""
        if self.runtime is None:
            return False

        try:
            while True:
                changed = self.runtime.check()
                if not changed:
                    break
                reloaded = self.runtime.apply(changed)
                OutputFormatter.log(f"Updated modules: {', '.join(reloaded)}", severity="debug")
        except (HotUpdateRejected, HotUpdateFailed) as exc:
            OutputFormatter.log(f"Live update failed: {exc}", severity="error")
            self.channel.send(ChannelMessage.of(MessageKind.HMR_FAIL, str(exc)))
            self.exit_process(HMR_FAIL_EXIT_CODE)
            return False

        self.channel.send(ChannelMessage.of(MessageKind.HMR_ACK))
        return True

    def _on_message(self, message: ChannelMessage) -> None:
        if message.kind == MessageKind.HMR_REQUEST:
            self.request_update()

    def _install_signal_handler(self, signal_name: str) -> None:
        try:
            signum = signal.Signals[signal_name]
        except KeyError:
            OutputFormatter.log(f"Unknown reload signal {signal_name}; signal reloads disabled", severity="warning")
            return

        # The handler only wakes the monitor thread; reloading inside it would
        # run in the middle of whatever the main thread was doing.
        signal.signal(signum, lambda _signum, _frame: self._wake.set())
        self._signal_thread = threading.Thread(target=self._signal_loop, name="startserver-monitor", daemon=True)
        self._signal_thread.start()

    def _signal_loop(self) -> None:
        while not self._closed.is_set():
            self._wake.wait()
            self._wake.clear()
            if self._closed.is_set():
                return
            self.request_update()


def notify_loaded() -> bool:
    """Signal readiness from application code, e.g. once the server socket is listening."""
    if _active_monitor is None:
        return False
    return _active_monitor.notify_loaded()


def active_monitor() -> Optional[ReloadMonitor]:
    return _active_monitor
