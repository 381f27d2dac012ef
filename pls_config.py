"""Runtime configuration for pls-fleet.

Defaults < <data_dir>/config.yaml < environment variables. The resulting
AppConfig is passed explicitly into every component; nothing reads it from
module state.
"""

import os
import shlex
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from pls_errors import ConfigError

DEFAULT_DATA_DIR = Path.home() / ".please"
DEFAULT_GENERATOR = ["claude", "-p", "{prompt}", "--output-format", "json"]


def _default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/bash"


@dataclass(frozen=True)
class AppConfig:
    data_dir: Path = DEFAULT_DATA_DIR
    command_history_limit: int = 10
    shell_history_limit: int = 15
    sysinfo_ttl_days: int = 7
    max_steps: int = 10
    batch_concurrency: int = 8
    control_persist: str = "10m"
    connect_timeout: int = 10
    command_timeout: int = 300
    master_timeout: int = 30
    output_limit: int = 500
    shell_hook: bool = False
    shell: str = field(default_factory=_default_shell)
    generator: list[str] = field(default_factory=lambda: list(DEFAULT_GENERATOR))
    generator_timeout: int = 120

    @property
    def remotes_dir(self) -> Path:
        return self.data_dir / "remotes"

    @property
    def registry_path(self) -> Path:
        return self.data_dir / "remotes.json"

    def remote_dir(self, name: str) -> Path:
        return self.remotes_dir / name


_INT_KEYS = {
    "command_history_limit", "shell_history_limit", "sysinfo_ttl_days",
    "max_steps", "batch_concurrency", "connect_timeout", "command_timeout",
    "master_timeout", "output_limit", "generator_timeout",
}
_POSITIVE_KEYS = _INT_KEYS - {"output_limit"}

# env var -> config key
_ENV_OVERRIDES = {
    "PLS_SSH_TIMEOUT": "command_timeout",
    "PLS_MAX_STEPS": "max_steps",
    "PLS_BATCH_CONCURRENCY": "batch_concurrency",
    "PLS_GENERATOR": "generator",
    "PLS_SHELL_HOOK": "shell_hook",
}


def _coerce(key: str, value: Any) -> Any:
    if key in _INT_KEYS:
        if isinstance(value, bool):
            raise ConfigError(f"{key} must be an integer, got {value!r}", key=key)
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{key} must be an integer, got {value!r}", key=key)
        if key in _POSITIVE_KEYS and number < 1:
            raise ConfigError(f"{key} must be greater than 0", key=key)
        if number < 0:
            raise ConfigError(f"{key} must not be negative", key=key)
        return number
    if key == "shell_hook":
        if isinstance(value, bool):
            return value
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        raise ConfigError(f"shell_hook must be a boolean, got {value!r}", key=key)
    if key == "generator":
        if isinstance(value, str):
            try:
                value = shlex.split(value)
            except ValueError as e:
                raise ConfigError(f"generator: {e}", key=key)
        if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
            raise ConfigError("generator must be a non-empty list of strings", key=key)
        return list(value)
    if key == "data_dir":
        return Path(str(value)).expanduser()
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string", key=key)
    return value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid config {path}: expected a mapping at the top level")
    return raw


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> AppConfig:
    """Build an AppConfig from defaults, the YAML file, env vars and overrides.

    Args:
        path: Explicit config file. Defaults to <data_dir>/config.yaml.
        environ: Environment mapping (defaults to os.environ).
        overrides: Final keyword overrides, e.g. from CLI flags.
    """
    env = os.environ if environ is None else environ
    known = {f.name for f in fields(AppConfig)}

    data_dir = Path(env.get("PLS_HOME", str(DEFAULT_DATA_DIR))).expanduser()
    if "data_dir" in overrides and overrides["data_dir"] is not None:
        data_dir = Path(overrides["data_dir"]).expanduser()
    config_path = path or data_dir / "config.yaml"

    values: dict[str, Any] = {"data_dir": data_dir}
    for key, value in _read_config_file(config_path).items():
        if key not in known:
            raise ConfigError(f"Unknown config key '{key}' in {config_path}", key=key)
        values[key] = _coerce(key, value)

    for env_name, key in _ENV_OVERRIDES.items():
        if env_name in env:
            values[key] = _coerce(key, env[env_name])

    for key, value in overrides.items():
        if value is None:
            continue
        if key not in known:
            raise ConfigError(f"Unknown config key '{key}'", key=key)
        values[key] = _coerce(key, value)

    return replace(AppConfig(), **values)
