from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from taskloop.config import CONFIG_FILENAME, TaskloopConfig
from taskloop.errors import PreflightError

logger = logging.getLogger(__name__)

Severity = Literal["info", "warning", "error"]


@dataclass(slots=True)
class PreflightCheck:
    name: str
    ok: bool
    severity: Severity
    message: str
    remediation: list[str] = field(default_factory=list)


def command_available(executable: str, cwd: Path | None = None) -> bool:
    if not executable.strip():
        return False
    check = subprocess.run(
        ["sh", "-c", f"command -v {shlex.quote(executable)} >/dev/null 2>&1"],
        cwd=cwd,
        text=True,
        capture_output=True,
    )
    return check.returncode == 0


def find_git_root(start: Path) -> Path | None:
    for directory in (start, *start.parents):
        if (directory / ".git").exists():
            return directory
    return None


def check_worker(config: TaskloopConfig) -> PreflightCheck:
    binary = config.worker.binary
    if command_available(binary, config.project_root):
        return PreflightCheck("worker", True, "info", f"Worker binary '{binary}' is available.")
    return PreflightCheck(
        "worker",
        False,
        "error",
        f"Worker binary '{binary}' not found in PATH.",
        [
            f"Install {binary} and make sure it is on PATH",
            "Or set [worker] binary in the config to an absolute path",
        ],
    )


def check_config_file(config_file: Path | None) -> PreflightCheck:
    if config_file is not None and config_file.exists():
        return PreflightCheck("config", True, "info", f"Using config {config_file}.")
    return PreflightCheck(
        "config",
        False,
        "error",
        f"No {CONFIG_FILENAME} found in the current directory or any parent.",
        ["Run `taskloop init` to create one"],
    )


def check_progress_file(config: TaskloopConfig) -> PreflightCheck:
    path = config.progress_path
    if path.is_file():
        return PreflightCheck("progress", True, "info", f"Progress file {path} exists.")
    return PreflightCheck(
        "progress",
        False,
        "error",
        f"Progress file not found: {path}",
        [f"Create {path} with a task table", "Or point [paths] progress at an existing file"],
    )


def check_git_repository(config: TaskloopConfig) -> PreflightCheck:
    root = find_git_root(config.project_root)
    if root is not None:
        return PreflightCheck("git", True, "info", f"Git repository at {root}.")
    return PreflightCheck(
        "git",
        False,
        "error",
        f"{config.project_root} is not within a git repository.",
        ["Initialize one with `git init`", "Or run taskloop from an existing repository"],
    )


def check_gate_commands(config: TaskloopConfig) -> list[PreflightCheck]:
    checks: list[PreflightCheck] = []
    for command in config.gate.commands:
        try:
            tokens = shlex.split(command)
        except ValueError as exc:
            checks.append(
                PreflightCheck(
                    "gate", False, "warning", f"Gate command {command!r} could not be parsed: {exc}"
                )
            )
            continue
        if not tokens:
            checks.append(PreflightCheck("gate", False, "warning", "Gate command is empty."))
            continue
        executable = tokens[0]
        if command_available(executable, config.project_root):
            continue
        checks.append(
            PreflightCheck(
                "gate",
                False,
                "warning",
                f"Gate command executable '{executable}' not found in PATH.",
            )
        )
    return checks


def run_preflight(config: TaskloopConfig, *, config_file: Path | None) -> list[PreflightCheck]:
    """Check the environment before the lock is taken.

    Missing prerequisites raise ``PreflightError`` listing every failed check
    with its remediation. Warnings are logged and returned.
    """
    checks = [
        check_config_file(config_file),
        check_worker(config),
        check_progress_file(config),
        check_git_repository(config),
        *check_gate_commands(config),
    ]
    for check in checks:
        if check.severity == "warning":
            logger.warning("%s", check.message)

    errors = [check for check in checks if check.severity == "error"]
    if errors:
        lines = ["Preflight failed:"]
        for check in errors:
            lines.append(f"- {check.message}")
            lines.extend(f"    {step}" for step in check.remediation)
        raise PreflightError("\n".join(lines), checks=[check.name for check in errors])
    return checks
