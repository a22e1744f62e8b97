from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from startserver.core.models import BuildOutput, ScriptReference
from startserver.pipeline.hooks import BuildHooks
from startserver.runtime.locator import build_script_reference
from startserver.runtime.reload_contracts import LoadState, ReloadSessionState
from startserver.runtime.supervisor import ProcessSupervisor, WorkerHandle
from startserver.utils.diagnostics import NoOutputProduced, StartServerError, UnknownEntry

HOOK_NAME = "startserver"


@dataclass(frozen=True)
class ReloadLifecycleEvent:
    """Host-facing outcome of one artifact-ready cycle."""

    action: str
    script: Optional[ScriptReference] = None
    session_state: Optional[ReloadSessionState] = None
    error: Optional[StartServerError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.session_state in (None, ReloadSessionState.ACKNOWLEDGED)


class LifecycleCoordinator:
    """Connects build hooks and the interactive console to a ProcessSupervisor."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        on_reload_success: Optional[Callable[[ReloadLifecycleEvent], None]] = None,
        on_reload_failure: Optional[Callable[[ReloadLifecycleEvent], None]] = None,
        report: Optional[Callable[[StartServerError], None]] = None,
    ) -> None:
        self.supervisor = supervisor
        self.on_reload_success = on_reload_success
        self.on_reload_failure = on_reload_failure
        self.report = report

    @property
    def config(self):
        return self.supervisor.config

    def bind(self, hooks: BuildHooks) -> None:
        hooks.tap_invalid(HOOK_NAME, self.on_invalidate)
        hooks.tap_should_emit(HOOK_NAME, self.should_emit)
        hooks.tap_artifact_ready(HOOK_NAME, self.on_artifact_ready)

    def on_invalidate(self) -> None:
        if self.config.kill_on_invalidate:
            self.supervisor.ensure_stopped()

    def should_emit(self, build: BuildOutput) -> bool:
        if self.config.emit_on_errors:
            return True
        return not build.has_errors

    async def on_artifact_ready(self, build: BuildOutput) -> ReloadLifecycleEvent:
        """Bring the worker up to date with ``build``: launch, reload in place, or relaunch."""
        try:
            script = build_script_reference(self.config, build)
        except (UnknownEntry, NoOutputProduced) as exc:
            if self.report is not None:
                self.report(exc)
            return self._finish(ReloadLifecycleEvent(action="blocked", error=exc))

        worker = self.supervisor.worker
        if worker is None or not worker.live:
            handle = await self.supervisor.launch(script)
            return self._finish(self._launched("launched", script, handle))

        if worker.load_state != LoadState.LOADED:
            # Never confirmed loaded: a reload request would be refused anyway.
            self.supervisor.ensure_stopped()
            handle = await self.supervisor.launch(script)
            return self._finish(self._launched("relaunched", script, handle))

        outcome = await self.supervisor.request_reload()
        if outcome == ReloadSessionState.ACKNOWLEDGED:
            self.supervisor.note_script(script)
            return self._finish(ReloadLifecycleEvent(action="reloaded", script=script, session_state=outcome))

        self.supervisor.ensure_stopped()
        handle = await self.supervisor.launch(script)
        event = self._launched("relaunched", script, handle)
        return self._finish(
            ReloadLifecycleEvent(action=event.action, script=script, session_state=outcome, error=event.error)
        )

    async def handle_console_line(self, line: str) -> bool:
        """Act on one line of interactive input. Returns True when it was the restart keyword."""
        if not self.config.console_restart_enabled:
            return False
        if line.strip() != self.config.restart_keyword:
            return False

        script = self.supervisor.last_script
        if script is None:
            self.supervisor.ensure_stopped()
            return True

        # launch() stops the current worker first.
        await self.supervisor.launch(script)
        return True

    def _launched(
        self,
        action: str,
        script: ScriptReference,
        handle: Optional[WorkerHandle],
    ) -> ReloadLifecycleEvent:
        if handle is not None:
            return ReloadLifecycleEvent(action=action, script=script)

        failures = [event.error for event in self.supervisor.events if event.error is not None]
        error = failures[-1] if failures else StartServerError(f"Unable to start {script.path}")
        return ReloadLifecycleEvent(action=action, script=script, error=error)

    def _finish(self, event: ReloadLifecycleEvent) -> ReloadLifecycleEvent:
        if event.succeeded and self.on_reload_success is not None:
            self.on_reload_success(event)
        elif not event.succeeded and self.on_reload_failure is not None:
            self.on_reload_failure(event)
        return event
