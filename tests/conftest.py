from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from taskloop.config import PHASES, TaskloopConfig

TABLE_HEADER = (
    "| ID | Title | File | Status | Priority | Complexity | Dependencies |\n"
    "| -- | ----- | ---- | ------ | -------- | ---------- | ------------ |"
)

FIX_SECTION = """### For Fix Agent

| Field           | Value |
| --------------- | ----- |
| Task            | - |
| Failed Gate     | - |
| Primary Error   | - |
| Root Cause Hint | - |
"""


def task_row(task_id: str, title: str, status: str) -> str:
    return f"| {task_id} | {title} | src/{task_id.lower()}.py | {status} | P1 | S | - |"


def render_progress(rows: list[tuple[str, str, str]], *, fix_section: bool = True) -> str:
    body = "\n".join(task_row(*row) for row in rows)
    text = f"# Progress\n\n## Tasks\n\n{TABLE_HEADER}\n{body}\n\n## Notes\n\n"
    if fix_section:
        text += FIX_SECTION + "\n## History\n\nNothing yet.\n"
    return text


@dataclass
class FakeWorker:
    path: Path
    calls_path: Path

    def calls(self) -> list[str]:
        if not self.calls_path.exists():
            return []
        return self.calls_path.read_text(encoding="utf-8").split()


@pytest.fixture
def progress_path(tmp_path: Path) -> Path:
    return tmp_path / "docs" / "PROGRESS.md"


@pytest.fixture
def make_progress(progress_path: Path) -> Callable[..., Path]:
    def _make(*rows: tuple[str, str, str], fix_section: bool = True) -> Path:
        progress_path.parent.mkdir(parents=True, exist_ok=True)
        progress_path.write_text(
            render_progress(list(rows), fix_section=fix_section), encoding="utf-8"
        )
        return progress_path

    return _make


@pytest.fixture
def make_worker(tmp_path: Path) -> Callable[..., FakeWorker]:
    """Build a shell script that stands in for the agent CLI.

    Each keyword names a phase and holds the shell snippet run for it; the
    script records the phase of every invocation in ``calls.log``.
    """

    def _make(**snippets: str) -> FakeWorker:
        calls_path = tmp_path / "calls.log"
        script = tmp_path / "fake-agent.sh"
        arms = "\n".join(f"  {phase}) {snippets.get(phase) or ':'} ;;" for phase in PHASES)
        script.write_text(
            "#!/bin/sh\n"
            'phase=""\n'
            'for arg in "$@"; do\n'
            '  case "$arg" in\n'
            '    --agent=*) phase="${arg#--agent=taskloop-}" ;;\n'
            "  esac\n"
            "done\n"
            f'echo "$phase" >> "{calls_path}"\n'
            'case "$phase" in\n'
            f"{arms}\n"
            "esac\n",
            encoding="utf-8",
        )
        script.chmod(0o755)
        return FakeWorker(path=script, calls_path=calls_path)

    return _make


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., TaskloopConfig]:
    def _make(
        worker: FakeWorker | None = None,
        *,
        gates: list[str] | None = None,
        max_fix_attempts: int = 2,
        max_iterations: int = 5,
        gate_timeout: float = 10.0,
    ) -> TaskloopConfig:
        config = TaskloopConfig.default(project_root=tmp_path)
        if worker is not None:
            config.worker.binary = str(worker.path)
        config.worker.inherit_stdio = False
        config.retry.base_delay_seconds = 0.0
        config.retry.max_delay_seconds = 0.0
        config.gate.commands = list(gates or [])
        config.gate.max_fix_attempts = max_fix_attempts
        config.gate.timeout_seconds = gate_timeout
        config.loop.max_iterations = max_iterations
        return config

    return _make
