from __future__ import annotations

import os

from startserver.core.models import BuildOutput, ScriptReference, SupervisorConfig
from startserver.utils.diagnostics import NoOutputProduced, UnknownEntry


def resolve_script(entry_name: str, build: BuildOutput) -> str:
    """Return the absolute path of the runnable script emitted for ``entry_name``."""
    files = build.entrypoints.get(entry_name)
    if files is None:
        raise UnknownEntry(entry_name, build.entrypoints.keys())

    if not files or not files[0]:
        raise NoOutputProduced(entry_name)

    return os.path.abspath(os.path.join(build.output_path, files[0]))


def build_script_reference(config: SupervisorConfig, build: BuildOutput) -> ScriptReference:
    """Capture the script and launch arguments for the worker that will run this build."""
    return ScriptReference(
        path=resolve_script(config.entry_name, build),
        args=config.args,
        interpreter_args=config.interpreter_args,
        inject_monitor=config.inject_monitor,
    )
