"""
Adapter that turns a build output directory into build hook calls.

The external build tool writes its files plus a manifest describing them, e.g.
``{"output_path": ".", "entrypoints": {"main": ["server.py"]}, "errors": []}``.
The first change of a write burst fires ``invalid``; once the burst settles the
manifest is loaded, ``should_emit`` is asked and ``artifact_ready`` is fired.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import yaml
from pydantic import ValidationError

from startserver.core.models import BuildOutput, WatchSettings
from startserver.pipeline.hooks import BuildHooks
from startserver.runtime.polling_watcher import ArtifactWatcher
from startserver.utils.diagnostics import InvalidManifest, StartServerError

YAML_SUFFIXES = (".yaml", ".yml")


def manifest_candidates(output_dir: Path, manifest_name: str) -> List[Path]:
    """The configured manifest first, then the same stem with the other format."""
    primary = output_dir / manifest_name
    stem = Path(manifest_name).stem
    candidates = [primary]
    for suffix in (".json", ".yaml", ".yml"):
        alternative = output_dir / f"{stem}{suffix}"
        if alternative not in candidates:
            candidates.append(alternative)
    return candidates


def load_manifest(path: Path) -> BuildOutput:
    """Parse a JSON or YAML manifest. ``output_path`` is resolved against the manifest's directory."""
    try:
        content = path.read_text(encoding="utf-8")
        if path.suffix in YAML_SUFFIXES:
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise InvalidManifest(f"Unable to read build manifest {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise InvalidManifest(f"Build manifest {path} must contain a mapping")

    data.setdefault("output_path", ".")
    try:
        build = BuildOutput.model_validate(data)
    except ValidationError as exc:
        raise InvalidManifest(f"Build manifest {path} is invalid: {exc}") from exc

    output_path = Path(build.output_path)
    if not output_path.is_absolute():
        output_path = (path.parent / output_path).resolve()
    return build.model_copy(update={"output_path": str(output_path)})


class ManifestPipeline:
    """Polls a build output directory and drives BuildHooks from it."""

    def __init__(
        self,
        output_dir: Path,
        hooks: BuildHooks,
        settings: Optional[WatchSettings] = None,
        on_error: Optional[Callable[[StartServerError], None]] = None,
    ) -> None:
        self.output_dir = output_dir
        self.hooks = hooks
        self.settings = settings or WatchSettings()
        self.on_error = on_error

        # The manifest is rewritten on every build, so it is always part of the tracked set.
        include = list(self.settings.include_patterns)
        if self.settings.manifest not in include and "*" not in include:
            include.append(self.settings.manifest)

        self.watcher = ArtifactWatcher(
            root_dir=self.output_dir,
            interval_ms=self.settings.interval_ms,
            debounce_ms=self.settings.debounce_ms,
            include_patterns=include,
            exclude_patterns=self.settings.exclude_patterns,
        )
        self.last_build: Optional[BuildOutput] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def find_manifest(self) -> Optional[Path]:
        for candidate in manifest_candidates(self.output_dir, self.settings.manifest):
            if candidate.is_file():
                return candidate
        return None

    def current_build(self) -> Optional[BuildOutput]:
        """Load the manifest as it is now and ask ``should_emit``; None when absent or vetoed."""
        manifest = self.find_manifest()
        if manifest is None:
            self._report(InvalidManifest(f"No build manifest found in {self.output_dir}"))
            return None

        try:
            build = load_manifest(manifest)
        except InvalidManifest as exc:
            self._report(exc)
            return None

        if not self.hooks.call_should_emit(build):
            return None
        self.last_build = build
        return build

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None, background: bool = True) -> None:
        """Start watching. With ``loop`` set, hooks run on that loop from the watcher thread."""
        if self._thread is not None:
            return

        self._loop = loop
        self.watcher.start()
        self._stop_event.clear()

        if background:
            self._thread = threading.Thread(target=self._watch_loop, name="startserver-watch", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=1)

        self.watcher.stop()
        self._thread = None

    def poll_once(self, now: float) -> Optional[BuildOutput]:
        """Run one poll cycle.

        Returns the build to publish when a burst has settled and was not vetoed.
        The watcher stays in ``emitting`` until ``complete_delivery()``.
        """
        result = self.watcher.poll(now=now)
        if result.burst_started:
            self._call_invalid()

        if not result.settled:
            return None

        build = self.current_build()
        if build is None:
            self.watcher.complete_delivery()
        return build

    def complete_delivery(self) -> None:
        self.watcher.complete_delivery()

    def _call_invalid(self) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.hooks.call_invalid)
        else:
            self.hooks.call_invalid()

    def _deliver(self, build: BuildOutput) -> None:
        if self._loop is None:
            return
        future = asyncio.run_coroutine_threadsafe(self.hooks.call_artifact_ready(build), self._loop)
        try:
            future.result()
        except StartServerError as exc:
            self._report(exc)
        except Exception as exc:
            # A broken tap must not end the watch thread; later builds still get delivered.
            self._report(StartServerError(f"artifact_ready hook failed: {type(exc).__name__}: {exc}"))

    def _watch_loop(self) -> None:
        interval_seconds = max(self.settings.interval_ms / 1000.0, 0.05)
        while not self._stop_event.is_set():
            build = self.poll_once(now=time.monotonic())
            if build is not None:
                try:
                    self._deliver(build)
                finally:
                    self.complete_delivery()
            self._stop_event.wait(interval_seconds)

    def _report(self, error: StartServerError) -> None:
        if self.on_error is not None:
            self.on_error(error)
