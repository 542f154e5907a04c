from __future__ import annotations

import difflib
import json
import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskloop.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "taskloop.toml"

PermissionMode = Literal["allow-all", "yolo", "strict", "none"]
PERMISSION_MODES: tuple[str, ...] = ("allow-all", "yolo", "strict", "none")

PHASES: tuple[str, ...] = ("impl", "fix", "review", "tidy")

DEFAULT_MODELS: dict[str, str] = {
    "impl": "gpt-5.3-codex",
    "fix": "claude-sonnet-4.6",
    "review": "claude-sonnet-4.6",
    "tidy": "gpt-5.2",
}


@dataclass(slots=True)
class PathsConfig:
    progress: str = "docs/PROGRESS.md"
    logs: str = ".taskloop-logs"
    lock: str = ".taskloop-lock"


@dataclass(slots=True)
class WorkerConfig:
    binary: str = "copilot"
    agent_prefix: str = "taskloop-"
    permissions: PermissionMode = "allow-all"
    models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    extra_flags: list[str] = field(default_factory=list)
    inherit_stdio: bool = True


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 4.0
    retryable_exit_codes: list[int] = field(default_factory=lambda: [429, 52, 124, 7, 6])


@dataclass(slots=True)
class GateConfig:
    commands: list[str] = field(
        default_factory=lambda: [
            "uv run --extra dev ruff check src tests",
            "uv run --extra dev pytest -q",
        ]
    )
    max_fix_attempts: int = 5
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 100


@dataclass(slots=True)
class TaskloopConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    project_root: Path = field(default_factory=Path.cwd)

    @classmethod
    def default(cls, project_root: Path | None = None) -> TaskloopConfig:
        config = cls()
        if project_root is not None:
            config.project_root = project_root
        return config

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], project_root: Path | None = None) -> TaskloopConfig:
        try:
            worker_data = dict(data.get("worker", {}))
            models = dict(DEFAULT_MODELS)
            models.update(worker_data.pop("models", {}) or {})
            config = cls(
                paths=PathsConfig(**data.get("paths", {})),
                worker=WorkerConfig(models=models, **worker_data),
                retry=RetryConfig(**data.get("retry", {})),
                gate=GateConfig(**data.get("gate", {})),
                loop=LoopConfig(**data.get("loop", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown or malformed configuration key: {exc}") from exc
        if project_root is not None:
            config.project_root = project_root
        return config

    def to_dict(self) -> dict:
        return {
            "paths": {
                "progress": self.paths.progress,
                "logs": self.paths.logs,
                "lock": self.paths.lock,
            },
            "worker": {
                "binary": self.worker.binary,
                "agent_prefix": self.worker.agent_prefix,
                "permissions": self.worker.permissions,
                "extra_flags": list(self.worker.extra_flags),
                "inherit_stdio": self.worker.inherit_stdio,
                "models": dict(self.worker.models),
            },
            "retry": {
                "max_retries": self.retry.max_retries,
                "base_delay_seconds": self.retry.base_delay_seconds,
                "max_delay_seconds": self.retry.max_delay_seconds,
                "retryable_exit_codes": list(self.retry.retryable_exit_codes),
            },
            "gate": {
                "commands": list(self.gate.commands),
                "max_fix_attempts": self.gate.max_fix_attempts,
                "timeout_seconds": self.gate.timeout_seconds,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
            },
        }

    def resolve_path(self, value: str) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = self.project_root / path
        return path

    @property
    def progress_path(self) -> Path:
        return self.resolve_path(self.paths.progress)

    @property
    def logs_path(self) -> Path:
        return self.resolve_path(self.paths.logs)

    @property
    def lock_path(self) -> Path:
        return self.resolve_path(self.paths.lock)


def validate_config(config: TaskloopConfig) -> TaskloopConfig:
    for name in ("progress", "logs", "lock"):
        if not str(getattr(config.paths, name)).strip():
            raise ConfigError(f"paths.{name} must not be empty")
    if config.worker.permissions not in PERMISSION_MODES:
        raise ConfigError(
            f"worker.permissions must be one of {', '.join(PERMISSION_MODES)}; "
            f"got {config.worker.permissions!r}"
        )
    if not config.worker.binary.strip():
        raise ConfigError("worker.binary must not be empty")
    missing = [phase for phase in PHASES if not config.worker.models.get(phase)]
    if missing:
        raise ConfigError(f"worker.models is missing entries for: {', '.join(missing)}")
    if config.retry.max_retries < 0:
        raise ConfigError("retry.max_retries must be >= 0")
    if config.retry.base_delay_seconds < 0 or config.retry.max_delay_seconds < 0:
        raise ConfigError("retry delays must be >= 0")
    if config.gate.max_fix_attempts < 0:
        raise ConfigError("gate.max_fix_attempts must be >= 0")
    if config.gate.timeout_seconds <= 0:
        raise ConfigError("gate.timeout_seconds must be > 0")
    if config.loop.max_iterations <= 0:
        raise ConfigError("loop.max_iterations must be > 0")
    return config


@dataclass(frozen=True, slots=True)
class EnvOverride:
    name: str
    section: str
    key: str
    kind: Literal["string", "number", "enum"]


ENV_OVERRIDES: tuple[EnvOverride, ...] = (
    EnvOverride("TASKLOOP_PROGRESS_PATH", "paths", "progress", "string"),
    EnvOverride("TASKLOOP_LOGS_PATH", "paths", "logs", "string"),
    EnvOverride("TASKLOOP_LOCK_PATH", "paths", "lock", "string"),
    EnvOverride("TASKLOOP_MAX_ITERATIONS", "loop", "max_iterations", "number"),
    EnvOverride("TASKLOOP_MAX_FIX_ATTEMPTS", "gate", "max_fix_attempts", "number"),
    EnvOverride("TASKLOOP_PERMISSIONS", "worker", "permissions", "enum"),
)

# Read by the CLI, not mapped onto a config field.
PASSTHROUGH_ENV_VARS: tuple[str, ...] = ("TASKLOOP_DEBUG",)


def _parse_env_value(raw: str, override: EnvOverride) -> tuple[bool, Any]:
    if override.kind == "string":
        return True, raw
    if override.kind == "number":
        try:
            value = int(raw, 10)
        except ValueError:
            return False, None
        return (value > 0, value)
    lowered = raw.lower()
    for mode in PERMISSION_MODES:
        if mode == lowered:
            return True, mode
    return False, None


def _warn_unknown_env(env: Mapping[str, str]) -> None:
    known = [item.name for item in ENV_OVERRIDES] + list(PASSTHROUGH_ENV_VARS)
    for name in sorted(env):
        if not name.startswith("TASKLOOP_") or name in known:
            continue
        suggestions = difflib.get_close_matches(name, known, n=1, cutoff=0.8)
        if suggestions:
            logger.warning(
                'Unknown environment variable "%s". Did you mean "%s"?', name, suggestions[0]
            )
        else:
            logger.warning(
                'Unknown environment variable "%s". Valid TASKLOOP_* variables: %s',
                name,
                ", ".join(known),
            )


def apply_env_overrides(config: TaskloopConfig, env: Mapping[str, str]) -> TaskloopConfig:
    _warn_unknown_env(env)
    for override in ENV_OVERRIDES:
        raw = env.get(override.name)
        if raw is None or raw == "":
            continue
        valid, value = _parse_env_value(raw, override)
        if not valid:
            logger.warning(
                'Invalid value for %s: "%s". Expected %s. Using config/default value instead.',
                override.name,
                raw,
                override.kind if override.kind != "enum" else "|".join(PERMISSION_MODES),
            )
            continue
        setattr(getattr(config, override.section), override.key, value)
        logger.debug("Applying env override: %s=%s", override.name, value)
    return config


def find_config(start: Path) -> Path | None:
    current = start.resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        if current.parent == current:
            return None
        current = current.parent


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("paths", "worker", "retry", "gate", "loop"):
        nested: dict[str, dict] = {}
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            if isinstance(value, dict):
                nested[key] = value
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
        for key, table in nested.items():
            lines.append(f"[{section}.{key}]")
            for sub_key, sub_value in table.items():
                lines.append(f"{json.dumps(sub_key)} = {_toml_value(sub_value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(
    path: Path | None = None,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> TaskloopConfig:
    """Load configuration: defaults, then the TOML file, then env overrides.

    When ``path`` is omitted the file is searched for from ``cwd`` upwards.
    The project root is the directory holding the config file, or ``cwd``
    when no file exists.
    """
    start = (cwd or Path.cwd()).resolve()
    config_path = path if path is not None else find_config(start)

    if config_path is None or not config_path.exists():
        logger.debug("No config file found, using defaults")
        config = TaskloopConfig.default(project_root=start)
    else:
        try:
            raw = tomllib.loads(config_path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Config file {config_path} is malformed: {exc}") from exc
        logger.debug("Loaded config from %s", config_path)
        config = TaskloopConfig.from_dict(raw, project_root=config_path.resolve().parent)

    apply_env_overrides(config, os.environ if env is None else env)
    return validate_config(config)


def save_config(path: Path, config: TaskloopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
