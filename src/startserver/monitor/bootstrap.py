"""
Worker entry point: ``python -m startserver.monitor.bootstrap SCRIPT [ARGS...]``.

Installs the reload monitor, then runs SCRIPT as ``__main__`` with ``sys.argv``
set to ``[SCRIPT, *ARGS]``.
"""

import runpy
import sys
from pathlib import Path
from typing import List, Optional

from startserver.monitor.agent import ReloadMonitor


def main(argv: Optional[List[str]] = None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        sys.stderr.write("usage: python -m startserver.monitor.bootstrap SCRIPT [ARGS...]\n")
        raise SystemExit(2)

    script = Path(argv[0]).resolve()
    sys.argv = [str(script), *argv[1:]]
    # Imports in the script resolve against its own directory, as with `python SCRIPT`.
    sys.path[0] = str(script.parent)

    monitor = ReloadMonitor.from_env(entry_path=script).install()
    try:
        runpy.run_path(str(script), run_name="__main__")
    finally:
        monitor.close()


if __name__ == "__main__":
    main()
