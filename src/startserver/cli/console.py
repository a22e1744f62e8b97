from __future__ import annotations

import asyncio
import sys
import threading
from typing import IO, Optional

from startserver.cli.formatter import OutputFormatter
from startserver.runtime.controller import LifecycleCoordinator


class ConsoleRestartListener:
    """Reads stdin on a daemon thread and forwards each line to the coordinator's loop."""

    def __init__(
        self,
        coordinator: LifecycleCoordinator,
        loop: asyncio.AbstractEventLoop,
        stream: Optional[IO[str]] = None,
    ) -> None:
        self.coordinator = coordinator
        self.loop = loop
        self.stream = stream if stream is not None else sys.stdin
        self._thread: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return self.coordinator.config.console_restart_enabled

    def start(self) -> bool:
        if not self.enabled or self._thread is not None:
            return False

        OutputFormatter.log(
            f"Type `{self.coordinator.config.restart_keyword}` and press Enter to restart the worker",
            severity="info",
        )
        self._thread = threading.Thread(target=self._read_loop, name="startserver-console", daemon=True)
        self._thread.start()
        return True

    def _read_loop(self) -> None:
        for line in self.stream:
            if self.loop.is_closed():
                return
            future = asyncio.run_coroutine_threadsafe(self.coordinator.handle_console_line(line), self.loop)
            if future.result():
                OutputFormatter.log("Restart requested from the console", severity="debug")
