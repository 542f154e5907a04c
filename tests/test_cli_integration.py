import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from taskloop.cli import cli
from taskloop.config import load_config, save_config
from taskloop.state.lock import LockManager

DEAD_PID = 999_999_999


def _use_fake_worker(config_path: Path, worker: Any, gates: list[str]) -> None:
    config = load_config(config_path, env={})
    config.worker.binary = str(worker.path)
    config.worker.inherit_stdio = False
    config.retry.base_delay_seconds = 0.0
    config.retry.max_delay_seconds = 0.0
    config.gate.commands = gates
    save_config(config_path, config)


def test_cli_full_lifecycle_commands(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_progress: Callable[..., Path],
    make_worker: Callable[..., Any],
) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".git").mkdir()
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert (tmp_path / "taskloop.toml").exists()

    again = runner.invoke(cli, ["init"])
    assert again.exit_code == 1
    assert "already exists" in again.output

    status_result = runner.invoke(cli, ["status", "--json"])
    assert status_result.exit_code == 0
    payload = json.loads(status_result.output)
    assert payload["state"] == "NO_STATE"
    assert payload["lock"]["is_locked"] is False

    progress = make_progress(("TASK_001", "Parser", "NOT STARTED"))
    worker = make_worker(impl=f"sed -i.bak 's/NOT STARTED/COMPLETE/' '{progress}'")
    _use_fake_worker(tmp_path / "taskloop.toml", worker, ["true"])

    dry_run = runner.invoke(cli, ["run", "--dry-run"])
    assert dry_run.exit_code == 0
    assert "State: WORK_LEFT" in dry_run.output
    assert "--agent=taskloop-impl" in dry_run.output
    assert "Gate commands: true" in dry_run.output
    assert worker.calls() == []
    assert not (tmp_path / ".taskloop-lock").exists()

    run_result = runner.invoke(cli, ["run", "--max-iterations", "5"])
    assert run_result.exit_code == 0
    assert worker.calls() == ["impl"]
    assert not (tmp_path / ".taskloop-lock").exists()
    assert list((tmp_path / ".taskloop-logs").glob("run-*.log"))

    final_status = runner.invoke(cli, ["status"])
    assert final_status.exit_code == 0
    assert "State: DONE" in final_status.output
    assert "Tasks: 1/1 complete" in final_status.output
    assert "Lock: not held" in final_status.output


def test_run_preflight_rejects_missing_progress_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, make_worker: Callable[..., Any]
) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".git").mkdir()
    worker = make_worker()
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    _use_fake_worker(tmp_path / "taskloop.toml", worker, [])

    result = runner.invoke(cli, ["run"])

    assert result.exit_code == 2
    assert "Progress file not found" in result.output
    assert worker.calls() == []
    assert not (tmp_path / ".taskloop-lock").exists()


def test_run_refuses_when_lock_is_held(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_progress: Callable[..., Path],
    make_worker: Callable[..., Any],
) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".git").mkdir()
    make_progress(("TASK_001", "Parser", "NOT STARTED"))
    worker = make_worker()
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    _use_fake_worker(tmp_path / "taskloop.toml", worker, [])
    LockManager(tmp_path / ".taskloop-lock", pid=1).acquire()

    result = runner.invoke(cli, ["run"])

    assert result.exit_code == 1
    assert worker.calls() == []


def test_status_reports_stale_lock_and_unlock_removes_it(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, make_progress: Callable[..., Path]
) -> None:
    monkeypatch.chdir(tmp_path)
    make_progress(("TASK_001", "Parser", "IN PROGRESS"))
    LockManager(tmp_path / ".taskloop-lock", pid=DEAD_PID).acquire(
        state="WORK_LEFT", iteration=2
    )
    runner = CliRunner()

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    assert f"Lock: held by PID {DEAD_PID}" in status_result.output
    assert "Lock state: WORK_LEFT (iteration 2)" in status_result.output
    assert "Lock appears stale" in status_result.output
    assert "Active task: TASK_001 Parser (IN PROGRESS)" in status_result.output

    unlock_result = runner.invoke(cli, ["unlock"])
    assert unlock_result.exit_code == 0
    assert not (tmp_path / ".taskloop-lock").exists()

    nothing = runner.invoke(cli, ["unlock"])
    assert "No lock file found." in nothing.output


def test_unlock_asks_before_removing_a_live_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    lock_path = tmp_path / ".taskloop-lock"
    LockManager(lock_path, pid=1).acquire()
    runner = CliRunner()

    declined = runner.invoke(cli, ["unlock"], input="n\n")
    assert declined.exit_code == 1
    assert lock_path.exists()

    forced = runner.invoke(cli, ["unlock", "--yes"])
    assert forced.exit_code == 0
    assert not lock_path.exists()


def test_invalid_config_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "taskloop.toml").write_text("[loop]\nmax_iterations = 0\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code == 1
    assert "loop.max_iterations" in result.output


def test_missing_explicit_config_is_reported(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["status", "--config", str(tmp_path / "nope.toml")])

    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_clean_removes_run_logs_and_keeps_progress_by_default(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, make_progress: Callable[..., Path]
) -> None:
    monkeypatch.chdir(tmp_path)
    progress = make_progress(("TASK_001", "Parser", "COMPLETE"))
    logs = tmp_path / ".taskloop-logs"
    logs.mkdir()
    (logs / "run-20260101T000000000000Z.log").write_text("x", encoding="utf-8")
    (logs / "notes.txt").write_text("keep", encoding="utf-8")
    runner = CliRunner()

    result = runner.invoke(cli, ["clean"])

    assert result.exit_code == 0
    assert "Cleaned 1 file(s)." in result.output
    assert [path.name for path in logs.iterdir()] == ["notes.txt"]
    assert progress.exists()

    again = runner.invoke(cli, ["clean"])
    assert "Nothing to clean." in again.output


def test_clean_progress_asks_first(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, make_progress: Callable[..., Path]
) -> None:
    monkeypatch.chdir(tmp_path)
    progress = make_progress(("TASK_001", "Parser", "COMPLETE"))
    runner = CliRunner()

    declined = runner.invoke(cli, ["clean", "--progress"], input="n\n")
    assert declined.exit_code == 1
    assert progress.exists()

    confirmed = runner.invoke(cli, ["clean", "--progress", "--yes"])
    assert confirmed.exit_code == 0
    assert not progress.exists()


def test_clean_refuses_while_locked(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    logs = tmp_path / ".taskloop-logs"
    logs.mkdir()
    run_log = logs / "run-20260101T000000000000Z.log"
    run_log.write_text("x", encoding="utf-8")
    LockManager(tmp_path / ".taskloop-lock", pid=1).acquire()

    result = CliRunner().invoke(cli, ["clean"])

    assert result.exit_code == 1
    assert "taskloop unlock" in result.output
    assert run_log.exists()
