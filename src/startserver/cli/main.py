import asyncio
import signal
import typer
from pathlib import Path
from typing import Any, Dict, List, Optional

from startserver.cli.console import ConsoleRestartListener
from startserver.cli.formatter import OutputFormatter
from startserver.config.loader import CONFIG_FILENAME, resolve_settings
from startserver.core.models import BuildOutput, HostSettings, ReloadMode, RestartPolicy, SupervisorConfig, WatchSettings
from startserver.pipeline.hooks import BuildHooks
from startserver.pipeline.manifest import ManifestPipeline, load_manifest, manifest_candidates
from startserver.runtime.controller import LifecycleCoordinator
from startserver.runtime.locator import resolve_script
from startserver.runtime.supervisor import ProcessSupervisor
from startserver.utils.diagnostics import ConfigurationError, StartServerError

app = typer.Typer(name="startserver", help="Run a worker process and keep it in sync with your build output", rich_markup_mode=None)

EXTRA_ARGS = {"allow_extra_args": True, "ignore_unknown_options": True}


def _read_option_value(tokens: list[str], index: int, option_name: str) -> tuple[str, int]:
    if index + 1 >= len(tokens):
        raise typer.BadParameter(f"Option {option_name} requires a value.")
    return tokens[index + 1], index + 2


def _parse_common_option(tokens: list[str], index: int, options: Dict[str, Any]) -> Optional[int]:
    """Consume --root / --entry / --output-dir at ``index``. Returns the next index, or None if not one of them."""
    token = tokens[index]
    for flags, key in (
        (("--root", "-r"), "root"),
        (("--entry", "-e"), "entry_name"),
        (("--output-dir", "-o"), "output_dir"),
    ):
        if token in flags:
            options[key], next_index = _read_option_value(tokens, index, token)
            return next_index
        if token.startswith(f"{flags[0]}="):
            options[key] = token.split("=", 1)[1]
            return index + 1
    return None


def _settings_for(root_dir: Path, overrides: Dict[str, Any], watch_overrides: Dict[str, Any]) -> tuple[SupervisorConfig, WatchSettings]:
    try:
        return resolve_settings(root_dir, overrides, watch_overrides)
    except ConfigurationError as exc:
        OutputFormatter.log(f"Invalid configuration: {exc}", severity="error")
        raise typer.Exit(code=1)


def _log_build_errors(build: BuildOutput) -> bool:
    OutputFormatter.print_diagnostics(build.errors)
    return True


async def _serve(root_dir: Path, config: SupervisorConfig, watch: WatchSettings) -> None:
    loop = asyncio.get_running_loop()

    supervisor = ProcessSupervisor(config, reporter=OutputFormatter.report_event)
    coordinator = LifecycleCoordinator(supervisor, report=OutputFormatter.report_error)
    hooks = BuildHooks()
    hooks.tap_should_emit("diagnostics", _log_build_errors)
    coordinator.bind(hooks)

    output_dir = root_dir / watch.output_dir
    pipeline = ManifestPipeline(output_dir, hooks, watch, on_error=OutputFormatter.report_error)

    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    try:
        if pipeline.find_manifest() is not None:
            build = pipeline.current_build()
            if build is not None:
                await hooks.call_artifact_ready(build)
        else:
            OutputFormatter.log(f"Waiting for a build manifest in {output_dir}", severity="info")

        pipeline.start(loop)
        ConsoleRestartListener(coordinator, loop).start()
        await stop.wait()
    finally:
        pipeline.stop()
        await supervisor.shutdown()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


@app.command(context_settings=EXTRA_ARGS)
def run(
    ctx: typer.Context,
):
    """
    Watch the build output and keep one worker running on the latest build.

    Unrecognised arguments (and everything after `--`) are passed to the worker.
    """
    options: Dict[str, Any] = {"root": "."}
    overrides: Dict[str, Any] = {}
    worker_args: List[str] = []

    tokens = list(ctx.args)
    index = 0
    while index < len(tokens):
        token = tokens[index]
        next_index = _parse_common_option(tokens, index, options)
        if next_index is not None:
            index = next_index
            continue
        if token == "--signal":
            overrides["reload_mode"] = ReloadMode.SIGNAL
            index += 1
            continue
        if token.startswith("--signal="):
            overrides["reload_mode"] = ReloadMode.SIGNAL
            overrides["reload_signal"] = token.split("=", 1)[1]
            index += 1
            continue
        if token == "--no-reload":
            overrides["reload_mode"] = ReloadMode.NONE
            index += 1
            continue
        if token == "--once":
            overrides["restart_policy"] = RestartPolicy.ONCE
            index += 1
            continue
        if token == "--restartable":
            overrides["restartable"] = True
            index += 1
            continue
        if token == "--kill-on-invalidate":
            overrides["kill_on_invalidate"] = True
            index += 1
            continue
        if token == "--verbose":
            OutputFormatter.verbose = True
            index += 1
            continue
        worker_args = tokens[index:]
        break

    if worker_args:
        overrides["args"] = worker_args
    if "entry_name" in options:
        overrides["entry_name"] = options["entry_name"]

    if HostSettings().verbose:
        OutputFormatter.verbose = True

    root_dir = Path(options["root"])
    config, watch = _settings_for(root_dir, overrides, {"output_dir": options.get("output_dir")})

    try:
        asyncio.run(_serve(root_dir, config, watch))
    except KeyboardInterrupt:
        pass


@app.command(context_settings=EXTRA_ARGS)
def resolve(
    ctx: typer.Context,
):
    """Print the script the worker would run for an entry of the current build."""
    options: Dict[str, Any] = {"root": "."}
    output_format = "text"

    tokens = list(ctx.args)
    index = 0
    while index < len(tokens):
        token = tokens[index]
        next_index = _parse_common_option(tokens, index, options)
        if next_index is not None:
            index = next_index
            continue
        if token == "--format":
            output_format, index = _read_option_value(tokens, index, token)
            continue
        if token.startswith("--format="):
            output_format = token.split("=", 1)[1]
            index += 1
            continue
        raise typer.BadParameter(f"Unknown option: {token}")

    output_format = output_format.lower()
    if output_format not in {"text", "json"}:
        raise typer.BadParameter("Option --format must be one of: text, json")

    root_dir = Path(options["root"])
    overrides = {"entry_name": options.get("entry_name")}
    config, watch = _settings_for(root_dir, overrides, {"output_dir": options.get("output_dir")})

    output_dir = root_dir / watch.output_dir
    manifest = next((path for path in manifest_candidates(output_dir, watch.manifest) if path.is_file()), None)
    if manifest is None:
        OutputFormatter.log(f"No build manifest found in {output_dir}", severity="error")
        raise typer.Exit(code=1)

    try:
        build = load_manifest(manifest)
        script = resolve_script(config.entry_name, build)
    except StartServerError as exc:
        OutputFormatter.report_error(exc)
        raise typer.Exit(code=1)

    if output_format == "json":
        OutputFormatter.print_data({"entry": config.entry_name, "script": script, "manifest": str(manifest)})
    else:
        OutputFormatter.print_data(script)


@app.command("check-config", context_settings=EXTRA_ARGS)
def check_config(
    ctx: typer.Context,
):
    """Validate startserver.yaml and print the effective configuration as JSON."""
    options: Dict[str, Any] = {"root": "."}

    tokens = list(ctx.args)
    index = 0
    while index < len(tokens):
        next_index = _parse_common_option(tokens, index, options)
        if next_index is None:
            raise typer.BadParameter(f"Unknown option: {tokens[index]}")
        index = next_index

    root_dir = Path(options["root"])
    if not (root_dir / CONFIG_FILENAME).exists():
        OutputFormatter.log(f"No {CONFIG_FILENAME} in {root_dir}; showing defaults.", severity="warning")

    overrides = {"entry_name": options.get("entry_name")}
    config, watch = _settings_for(root_dir, overrides, {"output_dir": options.get("output_dir")})
    OutputFormatter.print_data({"supervisor": config, "watch": watch})


if __name__ == "__main__":
    app()
