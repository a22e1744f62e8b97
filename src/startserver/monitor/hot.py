"""
Live module replacement for Python workers.

The runtime remembers the source mtime of every imported module that lives under
the hot root. ``check()`` reports modules whose source changed since then and
``apply()`` reloads them in place with ``importlib.reload``.

Modules can take part in the protocol with two optional attributes:

* ``__hot_decline__ = True``: the module cannot be replaced in place; any update
  touching it is rejected and the worker has to be restarted.
* ``__hot_dispose__()``: called right before the module is reloaded, e.g. to
  close sockets or cancel timers the old code owns.
"""

from __future__ import annotations

import importlib
import linecache
import os
import sys
import threading
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import Dict, List, Mapping, Optional

from startserver.runtime.channel import HOT_ENV, HOT_ROOT_ENV
from startserver.utils.diagnostics import HotUpdateFailed, HotUpdateRejected

# Never hot-replace the supervisor's own code inside the worker.
_INTERNAL_PREFIX = "startserver"


class HotStatus(str, Enum):
    IDLE = "idle"
    CHECK = "check"
    APPLY = "apply"
    ABORT = "abort"
    FAIL = "fail"


class HotModuleRuntime:
    """Tracks and reloads the worker's own modules."""

    def __init__(self, root: Path, entry_path: Optional[Path] = None) -> None:
        self.root = root.resolve()
        self.entry_path = entry_path.resolve() if entry_path is not None else None
        self._status = HotStatus.IDLE
        self._mtimes: Dict[str, int] = {}
        self._entry_mtime: Optional[int] = None
        self._lock = threading.Lock()

    def status(self) -> HotStatus:
        return self._status

    def track(self) -> None:
        """Record the current source mtimes; modules imported later are picked up by ``check()``."""
        for name, path in self._hot_modules().items():
            mtime = _mtime(path)
            if mtime is not None:
                self._mtimes[name] = mtime
        if self.entry_path is not None:
            self._entry_mtime = _mtime(self.entry_path)

    def check(self) -> List[str]:
        """Return the names of tracked modules whose source changed, in import order.

        A changed entry script cannot be replaced in place and aborts the update.
        """
        with self._lock:
            self._status = HotStatus.CHECK
            if self.entry_path is not None and self._entry_mtime is not None:
                if _mtime(self.entry_path) != self._entry_mtime:
                    self._status = HotStatus.ABORT
                    raise HotUpdateRejected(f"entry script {self.entry_path} changed and cannot be reloaded in place")

            changed: List[str] = []
            for name, path in self._hot_modules().items():
                mtime = _mtime(path)
                if mtime is None:
                    continue
                previous = self._mtimes.get(name)
                if previous is None:
                    self._mtimes[name] = mtime
                elif previous != mtime:
                    changed.append(name)

            self._status = HotStatus.IDLE
            return changed

    def apply(self, names: List[str]) -> List[str]:
        """Reload ``names``. Returns the modules actually reloaded."""
        with self._lock:
            modules = [(name, sys.modules[name]) for name in names if name in sys.modules]

            declined = [name for name, module in modules if getattr(module, "__hot_decline__", False)]
            if declined:
                self._status = HotStatus.ABORT
                raise HotUpdateRejected(f"update declined by {', '.join(declined)}")

            self._status = HotStatus.APPLY
            importlib.invalidate_caches()
            reloaded: List[str] = []
            for name, module in modules:
                try:
                    dispose = getattr(module, "__hot_dispose__", None)
                    if callable(dispose):
                        dispose()
                    _remove_cached_bytecode(module)
                    importlib.reload(module)
                except Exception as exc:
                    self._status = HotStatus.FAIL
                    raise HotUpdateFailed(f"reloading {name} failed: {exc!r}") from exc

                path = _source_path(module)
                mtime = _mtime(path) if path is not None else None
                if mtime is not None:
                    self._mtimes[name] = mtime
                reloaded.append(name)

            linecache.checkcache()
            self._status = HotStatus.IDLE
            return reloaded

    def _hot_modules(self) -> Dict[str, Path]:
        found: Dict[str, Path] = {}
        for name, module in list(sys.modules.items()):
            if module is None or name == "__main__" or name.split(".", 1)[0] == _INTERNAL_PREFIX:
                continue
            path = _source_path(module)
            if path is None or self.entry_path == path:
                continue
            if path == self.root or self.root in path.parents:
                found[name] = path
        return found


def detect_hot_runtime(
    environ: Optional[Mapping[str, str]] = None,
    entry_path: Optional[Path] = None,
) -> Optional[HotModuleRuntime]:
    """Return a runtime when the supervisor enabled live reload for this worker."""
    environ = os.environ if environ is None else environ
    if environ.get(HOT_ENV) != "1":
        return None

    root = environ.get(HOT_ROOT_ENV)
    if root:
        root_path = Path(root)
    elif entry_path is not None:
        root_path = entry_path.parent
    else:
        root_path = Path.cwd()
    return HotModuleRuntime(root_path, entry_path=entry_path)


def _source_path(module: ModuleType) -> Optional[Path]:
    filename = getattr(module, "__file__", None)
    if not isinstance(filename, str) or not filename.endswith(".py"):
        return None
    return Path(filename).resolve()


def _mtime(path: Path) -> Optional[int]:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def _remove_cached_bytecode(module: ModuleType) -> None:
    cached_path = getattr(module, "__cached__", None)
    if not isinstance(cached_path, str):
        return

    try:
        Path(cached_path).unlink(missing_ok=True)
    except OSError:
        return
