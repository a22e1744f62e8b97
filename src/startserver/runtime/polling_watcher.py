from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, List, Optional, Set

from startserver.runtime.reload_contracts import (
    WatcherEvent,
    WatcherState,
    transition_watcher_state,
)


@dataclass(frozen=True)
class WatcherPollResult:
    """Result from one watcher poll cycle."""

    burst_started: bool = False
    settled: bool = False
    changed_paths: List[str] = field(default_factory=list)


class ArtifactWatcher:
    """Polling watcher over a build output directory.

    A burst of writes is reported twice: once when the first change is seen
    (``burst_started``) and once when no further change arrived for the debounce
    window (``settled``). The watcher then stays in ``emitting`` until
    ``complete_delivery()`` is called.
    """

    def __init__(
        self,
        root_dir: Path,
        interval_ms: int = 500,
        debounce_ms: int = 200,
        include_patterns: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
    ) -> None:
        self.root_dir = root_dir
        self.interval_ms = interval_ms
        self.debounce_ms = debounce_ms
        self.include_patterns = include_patterns or ["*"]
        self.exclude_patterns = exclude_patterns or []

        self.state: WatcherState = WatcherState.STOPPED
        self._snapshot: Dict[str, int] = {}
        self._pending_changes: Set[str] = set()
        self._last_change_at: Optional[float] = None

    def start(self) -> None:
        """Start watching and take the initial snapshot."""
        self.state = transition_watcher_state(self.state, WatcherEvent.START)
        self._snapshot = self._build_snapshot()

    def stop(self) -> None:
        self.state = transition_watcher_state(self.state, WatcherEvent.STOP)

    def complete_delivery(self) -> None:
        """Return to watching once the settled burst has been handed off."""
        if self.state != WatcherState.EMITTING:
            return
        self.state = transition_watcher_state(self.state, WatcherEvent.DELIVERED)

    def poll(self, now: float) -> WatcherPollResult:
        if self.state == WatcherState.STOPPED:
            raise RuntimeError("ArtifactWatcher is not started. Call start() before poll().")

        if self.state == WatcherState.EMITTING:
            return WatcherPollResult()

        current_snapshot = self._build_snapshot()
        changed_paths = self._detect_changes(self._snapshot, current_snapshot)
        self._snapshot = current_snapshot

        if changed_paths:
            burst_started = self.state == WatcherState.WATCHING
            self.state = transition_watcher_state(self.state, WatcherEvent.OUTPUT_CHANGED)
            self._pending_changes.update(changed_paths)
            self._last_change_at = now
            return WatcherPollResult(burst_started=burst_started)

        if self.state == WatcherState.BUILDING and self._last_change_at is not None:
            if (now - self._last_change_at) >= self.debounce_ms / 1000.0:
                self.state = transition_watcher_state(self.state, WatcherEvent.OUTPUT_SETTLED)
                paths = sorted(self._pending_changes)
                self._pending_changes.clear()
                self._last_change_at = None
                return WatcherPollResult(settled=True, changed_paths=paths)

        return WatcherPollResult()

    def tracked_paths(self) -> Set[str]:
        return set(self._snapshot.keys())

    def _build_snapshot(self) -> Dict[str, int]:
        snapshot: Dict[str, int] = {}
        if not self.root_dir.exists():
            return snapshot

        for path in self.root_dir.rglob("*"):
            if not path.is_file():
                continue

            relative = path.relative_to(self.root_dir).as_posix()
            if not self._is_tracked_path(relative, path.name):
                continue

            try:
                snapshot[relative] = path.stat().st_mtime_ns
            except FileNotFoundError:
                # Removed between listing and stat by a build in progress.
                continue

        return snapshot

    def _is_tracked_path(self, relative_path: str, filename: str) -> bool:
        included = any(
            fnmatch(relative_path, pattern) or fnmatch(filename, pattern)
            for pattern in self.include_patterns
        )
        if not included:
            return False

        excluded = any(
            fnmatch(relative_path, pattern) or fnmatch(filename, pattern)
            for pattern in self.exclude_patterns
        )
        return not excluded

    @staticmethod
    def _detect_changes(previous: Dict[str, int], current: Dict[str, int]) -> Set[str]:
        previous_paths = set(previous.keys())
        current_paths = set(current.keys())

        changes = (current_paths - previous_paths) | (previous_paths - current_paths)
        for existing in previous_paths & current_paths:
            if previous[existing] != current[existing]:
                changes.add(existing)
        return changes
