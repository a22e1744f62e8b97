import signal
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from startserver.utils.diagnostics import ConfigurationError, SupervisorDiagnostic


MONITOR_BOOTSTRAP_MODULE = "startserver.monitor.bootstrap"


def normalize_signal_name(value: Union[str, int]) -> str:
    """Return the canonical ``SIGXXX`` name for a signal, validating it exists on this platform."""
    if isinstance(value, bool):
        raise ValueError(f"Not a signal: {value!r}")

    if isinstance(value, int):
        try:
            return signal.Signals(value).name
        except ValueError:
            raise ValueError(f"Unknown signal number: {value}") from None

    name = str(value).strip().upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        return signal.Signals[name].name
    except KeyError:
        raise ValueError(f"Unknown signal '{value}' on this platform") from None


class ReloadMode(str, Enum):
    """How a live worker is told to pick up a new build."""

    NONE = "none"
    SIGNAL = "signal"
    MESSAGE = "message"


class RestartPolicy(str, Enum):
    ONCE = "once"
    FOREVER = "forever"


class HostSettings(BaseSettings):
    """
    Host-level settings read from ``STARTSERVER_*`` environment variables.
    """
    model_config = SettingsConfigDict(env_prefix='STARTSERVER_', extra='ignore')

    env: str = "production"
    verbose: bool = False


def _restartable_default() -> bool:
    return HostSettings().env == "development"


class SupervisorConfig(BaseModel):
    """
    Immutable supervisor options (the 'supervisor' section in startserver.yaml).
    """
    model_config = ConfigDict(frozen=True, extra='forbid')

    entry_name: str = Field(default="main", min_length=1)
    args: Tuple[str, ...] = ()
    interpreter_args: Tuple[str, ...] = ()
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None
    reload_mode: ReloadMode = ReloadMode.MESSAGE
    reload_signal: str = "SIGUSR2"
    kill_signal: str = "SIGTERM"
    restart_policy: RestartPolicy = RestartPolicy.FOREVER
    restartable: bool = Field(default_factory=_restartable_default)
    restart_keyword: str = Field(default="rs", min_length=1)
    kill_on_invalidate: bool = False
    reload_timeout: float = Field(default=5.0, gt=0)
    inject_monitor: bool = True
    emit_on_errors: bool = False

    @field_validator("args", "interpreter_args", mode="before")
    @classmethod
    def _require_ordered_sequence(cls, value: Any) -> Any:
        # Argument order is significant; sets and other unordered collections are refused.
        if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
            raise ValueError(f"must be a sequence of strings, got {type(value).__name__}")
        return value

    @field_validator("kill_signal", mode="before")
    @classmethod
    def _validate_kill_signal(cls, value: Any) -> str:
        return normalize_signal_name(value)

    @field_validator("reload_signal", mode="before")
    @classmethod
    def _canonical_reload_signal(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return normalize_signal_name(value)
        return str(value).strip().upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _validate_reload_signal(self) -> "SupervisorConfig":
        # Only the selected mechanism has to exist on this platform.
        if self.reload_mode == ReloadMode.SIGNAL:
            normalized = normalize_signal_name(self.reload_signal)
            if normalized != self.reload_signal:
                object.__setattr__(self, "reload_signal", normalized)
        return self

    @property
    def run_once(self) -> bool:
        return self.restart_policy == RestartPolicy.ONCE

    @property
    def console_restart_enabled(self) -> bool:
        return self.restartable and not self.run_once


class WatchSettings(BaseModel):
    """
    Build output polling settings (the 'watch' section in startserver.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    output_dir: str = "build"
    manifest: str = "manifest.json"
    interval_ms: int = Field(default=500, ge=50)
    debounce_ms: int = Field(default=200, ge=0)
    include_patterns: List[str] = Field(default_factory=lambda: ["*"])
    exclude_patterns: List[str] = Field(default_factory=lambda: ["__pycache__/*", "*.pyc"])


class BuildOutput(BaseModel):
    """
    Metadata for one finished build: where output went and which files each entry produced.
    """
    model_config = ConfigDict(extra='ignore')

    output_path: str
    entrypoints: Dict[str, List[str]] = Field(default_factory=dict)
    errors: List[SupervisorDiagnostic] = Field(default_factory=list)
    hash: Optional[str] = None

    @property
    def has_errors(self) -> bool:
        return any(d.severity in {"error", "critical"} for d in self.errors)


class ScriptReference(BaseModel):
    """The resolved script plus everything needed to launch it."""
    model_config = ConfigDict(frozen=True)

    path: str
    args: Tuple[str, ...] = ()
    interpreter_args: Tuple[str, ...] = ()
    inject_monitor: bool = True

    def command(self, executable: str) -> List[str]:
        argv = [executable, *self.interpreter_args]
        if self.inject_monitor:
            argv.extend(["-m", MONITOR_BOOTSTRAP_MODULE])
        argv.append(self.path)
        argv.extend(self.args)
        return argv

    def describe(self) -> str:
        cmdline = " ".join([*self.interpreter_args, self.path])
        if self.args:
            cmdline += " -- " + " ".join(self.args)
        return cmdline


def _describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "options"
        problems.append(f"options.{location}: {error.get('msg')}")
    return "; ".join(problems)


def load_supervisor_config(
    options: Union[None, str, Mapping, SupervisorConfig] = None,
) -> SupervisorConfig:
    """
    Build a SupervisorConfig from user options.

    Accepts an existing config, a bare entry name, or a mapping. The mapping may use
    the short forms ``signal`` (True, or a signal name) and ``once`` (bool).
    Every problem is raised as ConfigurationError so it surfaces before any spawn.
    """
    if isinstance(options, SupervisorConfig):
        return options
    if options is None:
        options = {}
    if isinstance(options, str):
        options = {"entry_name": options}
    if not isinstance(options, Mapping):
        raise ConfigurationError(
            f"Supervisor options must be an entry name or a mapping, got {type(options).__name__}"
        )

    data: Dict[str, Any] = dict(options)

    if "signal" in data:
        requested = data.pop("signal")
        if requested is True:
            data.setdefault("reload_mode", ReloadMode.SIGNAL)
            data.setdefault("reload_signal", "SIGUSR2")
        elif isinstance(requested, (str, int)) and not isinstance(requested, bool) and requested:
            data.setdefault("reload_mode", ReloadMode.SIGNAL)
            data.setdefault("reload_signal", requested)
        elif requested not in (False, None, ""):
            raise ConfigurationError(f"options.signal must be a bool or a signal name, got {requested!r}")

    if "once" in data:
        if data.pop("once"):
            data.setdefault("restart_policy", RestartPolicy.ONCE)

    for key in ("args", "interpreter_args"):
        value = data.get(key)
        if isinstance(value, (str, bytes)):
            raise ConfigurationError(f"options.{key} has to be a sequence of strings, got a single string")

    try:
        return SupervisorConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(_describe_validation_error(exc)) from exc
