"""Hook points a build pipeline exposes to the supervisor."""

from __future__ import annotations

from typing import Awaitable, Callable, List, Tuple

from startserver.core.models import BuildOutput

InvalidHook = Callable[[], None]
ArtifactReadyHook = Callable[[BuildOutput], Awaitable[None]]
ShouldEmitHook = Callable[[BuildOutput], bool]


class BuildHooks:
    """
    Named taps for the three build events.

    ``invalid`` fires when inputs change and a rebuild starts, ``should_emit`` is
    asked before a finished build is published (any tap returning False vetoes it)
    and ``artifact_ready`` receives the published build.
    """

    def __init__(self) -> None:
        self._invalid: List[Tuple[str, InvalidHook]] = []
        self._artifact_ready: List[Tuple[str, ArtifactReadyHook]] = []
        self._should_emit: List[Tuple[str, ShouldEmitHook]] = []

    def tap_invalid(self, name: str, callback: InvalidHook) -> None:
        self._invalid.append((name, callback))

    def tap_artifact_ready(self, name: str, callback: ArtifactReadyHook) -> None:
        self._artifact_ready.append((name, callback))

    def tap_should_emit(self, name: str, callback: ShouldEmitHook) -> None:
        self._should_emit.append((name, callback))

    @property
    def tap_names(self) -> List[str]:
        return [name for name, _ in self._invalid + self._artifact_ready + self._should_emit]

    def call_invalid(self) -> None:
        for _, callback in self._invalid:
            callback()

    def call_should_emit(self, build: BuildOutput) -> bool:
        # Every tap is consulted; a single False vetoes.
        verdicts = [callback(build) for _, callback in self._should_emit]
        return all(verdict is not False for verdict in verdicts)

    async def call_artifact_ready(self, build: BuildOutput) -> None:
        for _, callback in self._artifact_ready:
            await callback(build)
