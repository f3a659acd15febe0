"""Run configuration.

One ``RunConfig`` is built per invocation and handed to the orchestrator.
Values come from CLI flags, then environment variables, then
``.ralphie/config.yml``, then the defaults below.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError, HarnessNotFound
from .harness import HARNESSES
from .progress import DEFAULT_STUCK_THRESHOLD
from .spec import DEFAULT_BUDGET

DEFAULT_ITERATIONS = 1
MAX_ALL_ITERATIONS = 100
DEFAULT_IDLE_TIMEOUT = 120.0
DEFAULT_MODEL = "sonnet"
DEFAULT_HARNESS = "claude"

CONFIG_FILE = Path(".ralphie") / "config.yml"
HARNESS_ENV = "RALPHIE_HARNESS"
MODEL_ENV = "RALPHIE_MODEL"

_FILE_KEYS = {
    "harness": str,
    "harness_command": str,
    "model": str,
    "budget": int,
    "idle_timeout": float,
    "stuck_threshold": int,
    "iterations": int,
    "stop_on_error": bool,
    "prompt": str,
}


@dataclass
class RunConfig:
    cwd: Path = field(default_factory=Path.cwd)
    iterations: int = DEFAULT_ITERATIONS
    run_until_done: bool = False
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    stuck_threshold: int = DEFAULT_STUCK_THRESHOLD
    budget: int = DEFAULT_BUDGET
    model: str | None = DEFAULT_MODEL
    harness: str = DEFAULT_HARNESS
    harness_command: str | None = None
    stop_on_error: bool = True
    prompt: str = ""
    output_dir: Path | None = None
    debug: bool = False

    def __post_init__(self) -> None:
        self.cwd = Path(self.cwd)
        if self.output_dir is not None:
            self.output_dir = Path(self.output_dir)
        if self.iterations < 1:
            raise ConfigError("iterations must be at least 1")
        if self.idle_timeout <= 0:
            raise ConfigError("idle timeout must be positive")
        if self.stuck_threshold < 1:
            raise ConfigError("stuck threshold must be at least 1")
        if self.budget < 1:
            raise ConfigError("budget must be at least 1 point")

    @property
    def max_iterations(self) -> int:
        return MAX_ALL_ITERATIONS if self.run_until_done else self.iterations

    def settings(self) -> dict[str, Any]:
        data = asdict(self)
        data["cwd"] = str(self.cwd)
        data["output_dir"] = str(self.output_dir) if self.output_dir else None
        data["max_iterations"] = self.max_iterations
        return data


def load_file_config(cwd: Path) -> dict[str, Any]:
    """Read .ralphie/config.yml. Missing file means no overrides."""
    path = cwd / CONFIG_FILE
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")

    values: dict[str, Any] = {}
    for key, kind in _FILE_KEYS.items():
        if key not in data or data[key] is None:
            continue
        value = data[key]
        if kind is bool:
            if not isinstance(value, bool):
                raise ConfigError(f"{path}: '{key}' must be true or false")
        else:
            try:
                value = kind(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"{path}: invalid value for '{key}': {value!r}") from e
        values[key] = value
    return values


def resolve_harness_name(cli_value: str | None, file_value: str | None) -> str:
    """CLI flag, then $RALPHIE_HARNESS, then config file, then 'claude'."""
    for candidate in (cli_value, os.environ.get(HARNESS_ENV), file_value):
        if candidate:
            if candidate not in HARNESSES:
                raise HarnessNotFound(candidate, sorted(HARNESSES))
            return candidate
    return DEFAULT_HARNESS


def build_config(cwd: Path, **overrides: Any) -> RunConfig:
    """Merge file config, environment and explicit overrides into a RunConfig.

    ``None`` overrides are ignored so argparse defaults can be passed through.
    """
    cwd = Path(cwd).resolve()
    file_values = load_file_config(cwd)
    values: dict[str, Any] = {k: v for k, v in file_values.items() if k != "harness"}

    env_model = os.environ.get(MODEL_ENV)
    if env_model:
        values["model"] = env_model

    cli_harness = overrides.pop("harness", None)
    values["harness"] = resolve_harness_name(cli_harness, file_values.get("harness"))

    for key, value in overrides.items():
        if value is not None:
            values[key] = value
    return RunConfig(cwd=cwd, **values)
