import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from startserver.core.models import SupervisorConfig, WatchSettings, load_supervisor_config
from startserver.utils.diagnostics import ConfigurationError

ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]+))?\}")

CONFIG_FILENAME = "startserver.yaml"
ALLOWED_SECTIONS = {"supervisor", "watch"}

def interpolate_env_vars(content: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variables."""
    def replace_match(match: re.Match) -> str:
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.environ.get(var_name, default_value)

    return ENV_VAR_PATTERN.sub(replace_match, content)

def load_config(path: Path) -> Dict[str, Any]:
    """
    Load startserver.yaml with environment variable interpolation.

    Only the 'supervisor' and 'watch' sections are kept. A missing file yields an
    empty mapping; a file that is not valid YAML is a ConfigurationError since a
    silently ignored supervisor config would spawn the wrong worker.
    """
    if not path.exists():
        return {}

    try:
        content = path.read_text(encoding="utf-8")
        full_config = yaml.safe_load(interpolate_env_vars(content)) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Unable to read {path}: {exc}") from exc

    if not isinstance(full_config, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")

    return {k: v for k, v in full_config.items() if k in ALLOWED_SECTIONS}

def resolve_settings(
    root_dir: Path,
    overrides: Optional[Dict[str, Any]] = None,
    watch_overrides: Optional[Dict[str, Any]] = None,
) -> tuple[SupervisorConfig, WatchSettings]:
    """Merge file configuration with command line overrides (which win)."""
    config_data = load_config(root_dir / CONFIG_FILENAME)

    supervisor_section = config_data.get("supervisor") or {}
    watch_section = config_data.get("watch") or {}
    if not isinstance(supervisor_section, dict) or not isinstance(watch_section, dict):
        raise ConfigurationError("'supervisor' and 'watch' sections must be mappings")

    supervisor_options = {**supervisor_section, **{k: v for k, v in (overrides or {}).items() if v is not None}}
    watch_options = {**watch_section, **{k: v for k, v in (watch_overrides or {}).items() if v is not None}}

    try:
        watch = WatchSettings(**watch_options)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid watch settings: {exc}") from exc

    return load_supervisor_config(supervisor_options), watch
