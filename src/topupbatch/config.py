"""
Batch configuration loading.

Values are layered: built-in defaults, then an optional YAML file, then
environment variables, then command line options.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import yaml

DEFAULT_RUNS = ("doors1", "doors2", "rs")
DEFAULT_AP_KEYS = ("ap", "blipa")
DEFAULT_PA_KEYS = ("pa", "blipb")
PEDIR_VALUES = ("j-", "j")
# Explicit "no override": the BOLD sidecar decides.
PEDIR_AUTO = "auto"

# Environment variable -> config field.
ENV_VARS = {
    "ROOT": "root",
    "BOLD_RUNS": "runs",
    "N_WORKERS": "workers",
    "TOPUP_NTHR": "engine_threads",
    "PEDIR_OVERRIDE": "pedir_override",
    "AP_KEYS": "ap_keys",
    "PA_KEYS": "pa_keys",
    "DRY_RUN": "dry_run",
    "WORK_ROOT": "work_root",
    "LOG_DIR": "log_dir",
}

_LIST_FIELDS = {"runs", "ap_keys", "pa_keys"}
_INT_FIELDS = {"workers", "engine_threads"}
_PATH_FIELDS = {"root", "work_root", "log_dir"}
_KNOWN_FIELDS = set(ENV_VARS.values()) | {"log_level"}


class ConfigError(ValueError):
    """Raised when the batch configuration is invalid."""


@dataclass(frozen=True)
class BatchConfig:
    root: Path
    runs: tuple[str, ...] = DEFAULT_RUNS
    workers: int = 1
    engine_threads: int = 1
    pedir_override: Optional[str] = None
    ap_keys: tuple[str, ...] = DEFAULT_AP_KEYS
    pa_keys: tuple[str, ...] = DEFAULT_PA_KEYS
    dry_run: bool = False
    work_root: Optional[Path] = None
    log_dir: Path = field(default_factory=Path.home)
    log_level: str = "INFO"

    @property
    def workspace_root(self) -> Path:
        return self.work_root if self.work_root is not None else self.root


def load_config(
    cli_values: Optional[Mapping[str, object]] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BatchConfig:
    """
    Build a validated BatchConfig.

    Args:
        cli_values: Values given on the command line; ``None`` entries are ignored.
        config_path: Optional YAML file with config field names as keys.
        environ: Environment mapping (defaults to ``os.environ``).

    Raises:
        ConfigError: when any layer holds an invalid value or the root is unusable.
    """
    environ = os.environ if environ is None else environ
    merged: dict[str, object] = {}

    if config_path is not None:
        merged.update(_load_yaml_layer(config_path))

    for env_name, key in ENV_VARS.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        merged[key] = raw

    for key, value in (cli_values or {}).items():
        if value is None:
            continue
        merged[key] = value

    return _build_config(merged)


def _load_yaml_layer(path: Path) -> dict:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as err:
        raise ConfigError(f"Failed to parse config YAML: {err}") from err
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("Config file must be a mapping at the top level.")
    unknown = sorted(set(raw) - _KNOWN_FIELDS)
    if unknown:
        raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")
    return dict(raw)


def _build_config(values: dict) -> BatchConfig:
    if values.get("root") in (None, ""):
        raise ConfigError("Dataset root is required (--root or ROOT).")

    kwargs: dict[str, object] = {}
    for key, value in values.items():
        if key in _LIST_FIELDS:
            kwargs[key] = _as_word_tuple(key, value)
        elif key in _INT_FIELDS:
            kwargs[key] = _as_positive_int(key, value)
        elif key in _PATH_FIELDS:
            kwargs[key] = Path(str(value)).expanduser()
        elif key == "dry_run":
            kwargs[key] = _as_bool(value)
        elif key == "pedir_override":
            kwargs[key] = _as_pedir(value)
        elif key == "log_level":
            kwargs[key] = str(value).upper()
        else:
            raise ConfigError(f"Unknown config key: {key}")

    root = kwargs["root"]
    if not isinstance(root, Path) or not root.is_dir():
        raise ConfigError(f"ROOT not found: {root}")

    for key in ("runs", "ap_keys", "pa_keys"):
        if key in kwargs and not kwargs[key]:
            raise ConfigError(f"'{key}' must contain at least one entry.")

    return BatchConfig(**kwargs)  # type: ignore[arg-type]


def _as_word_tuple(key: str, value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        words = value.split()
    elif isinstance(value, (list, tuple)):
        words = []
        for item in value:
            if not isinstance(item, str):
                raise ConfigError(f"'{key}' must contain only strings.")
            words.extend(item.split())
    else:
        raise ConfigError(f"'{key}' must be a string or a list of strings.")
    # Keep first occurrence order; a repeated label would yield a duplicate task.
    return tuple(dict.fromkeys(words))


def _as_positive_int(key: str, value: object) -> int:
    try:
        number = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as err:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from err
    if isinstance(value, float) and value != number:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    if number < 1:
        raise ConfigError(f"'{key}' must be >= 1, got {number}")
    return number


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ("0", "false", "no", "off", "")


def _as_pedir(value: object) -> Optional[str]:
    text = str(value).strip()
    if not text or text == PEDIR_AUTO:
        return None
    if text not in PEDIR_VALUES:
        raise ConfigError(f"PEDIR override must be one of {', '.join(PEDIR_VALUES)}; got {text!r}")
    return text
