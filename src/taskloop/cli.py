from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
from pathlib import Path

import click

from taskloop.backends.cli import CLIWorkerBackend
from taskloop.config import (
    CONFIG_FILENAME,
    TaskloopConfig,
    find_config,
    load_config,
    save_config,
)
from taskloop.errors import PreflightError, TaskloopError
from taskloop.orchestrator import PHASE_FOR_STATE, planned_action, run_loop
from taskloop.preflight import run_preflight
from taskloop.runlog import list_run_logs, remove_run_logs
from taskloop.state.lock import LockManager
from taskloop.state.progress import StateEngine

logger = logging.getLogger("taskloop")

DEBUG_ENV_VAR = "TASKLOOP_DEBUG"
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _debug_requested(verbose: bool) -> bool:
    return verbose or os.environ.get(DEBUG_ENV_VAR, "").lower() in {"1", "true", "yes"}


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if _debug_requested(verbose) else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")
    logger.setLevel(level)


def _load(config_value: str | None) -> TaskloopConfig:
    config_path = Path(config_value).resolve() if config_value else None
    if config_path is not None and not config_path.exists():
        raise click.ClickException(f"Config file not found: {config_path}")
    try:
        return load_config(config_path)
    except TaskloopError as exc:
        raise click.ClickException(str(exc)) from exc


config_option = click.option(
    "--config",
    "config_value",
    default=None,
    help=f"Path to {CONFIG_FILENAME} (searched upwards from the working directory by default).",
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Drive coding agents through a markdown task list until it is done."""
    _configure_logging(verbose)


@cli.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config file.")
def init_command(force: bool) -> None:
    repo_root = Path.cwd().resolve()
    config_path = repo_root / CONFIG_FILENAME
    if config_path.exists() and not force:
        raise click.ClickException(f"{config_path} already exists. Use --force to overwrite.")
    config = TaskloopConfig.default(project_root=repo_root)
    save_config(config_path, config)
    click.echo(f"Initialized taskloop in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Progress file: {config.progress_path}")


class PreflightFailed(click.ClickException):
    exit_code = PreflightError.exit_code


def _preflight(config: TaskloopConfig, config_value: str | None) -> None:
    config_file = Path(config_value).resolve() if config_value else find_config(Path.cwd())
    try:
        run_preflight(config, config_file=config_file)
    except PreflightError as exc:
        raise PreflightFailed(str(exc)) from exc


def _dry_run(config: TaskloopConfig) -> None:
    try:
        snapshot = StateEngine(config.progress_path).query()
    except TaskloopError as exc:
        raise click.ClickException(str(exc)) from exc
    stats = snapshot.stats
    click.echo(f"State: {snapshot.state.value}")
    click.echo(
        f"Tasks: {stats.completed}/{stats.total} complete, {stats.remaining} remaining, "
        f"{stats.in_review} in review, {stats.blocked} blocked"
    )
    if snapshot.active_task is not None:
        click.echo(f"Active task: {snapshot.active_task.id} {snapshot.active_task.title}")
    click.echo(f"Next action: {planned_action(snapshot.state)}")
    phase = PHASE_FOR_STATE.get(snapshot.state)
    if phase is not None:
        command = CLIWorkerBackend.from_config(config).build_command(phase)
        click.echo(f"Worker command: {shlex.join(command)}")
    click.echo(f"Gate commands: {', '.join(config.gate.commands) or '(none)'}")
    click.echo(f"Max fix attempts: {config.gate.max_fix_attempts}")
    click.echo(f"Max iterations: {config.loop.max_iterations}")


@cli.command("run")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--force", is_flag=True, default=False, help="Override an existing lock.")
@click.option("--dry-run", is_flag=True, default=False, help="Show what would run and exit.")
@config_option
@click.pass_context
def run_command(
    ctx: click.Context,
    max_iterations: int | None,
    force: bool,
    dry_run: bool,
    config_value: str | None,
) -> None:
    config = _load(config_value)
    _preflight(config, config_value)
    if dry_run:
        _dry_run(config)
        return
    try:
        exit_code = asyncio.run(run_loop(config, max_iterations=max_iterations, force=force))
    except TaskloopError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.exit(exit_code)


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def status_command(as_json: bool, config_value: str | None) -> None:
    config = _load(config_value)
    try:
        snapshot = StateEngine(config.progress_path).query()
    except TaskloopError as exc:
        raise click.ClickException(str(exc)) from exc
    lock_info = LockManager(config.lock_path).get_lock_info()
    stats = snapshot.stats
    active = snapshot.active_task

    if as_json:
        payload = {
            "state": snapshot.state.value,
            "stats": {
                "total": stats.total,
                "completed": stats.completed,
                "remaining": stats.remaining,
                "in_review": stats.in_review,
                "blocked": stats.blocked,
            },
            "active_task": (
                {"id": active.id, "title": active.title, "status": active.status}
                if active
                else None
            ),
            "lock": lock_info.to_dict(),
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    click.echo(f"State: {snapshot.state.value}")
    click.echo(
        f"Tasks: {stats.completed}/{stats.total} complete, {stats.remaining} remaining, "
        f"{stats.in_review} in review, {stats.blocked} blocked"
    )
    if active is not None:
        click.echo(f"Active task: {active.id} {active.title} ({active.status})")
    if not lock_info.is_locked:
        click.echo("Lock: not held")
        return
    holder = f"PID {lock_info.pid}" if lock_info.pid is not None else "unknown process"
    elapsed = f", running for {lock_info.elapsed}" if lock_info.elapsed else ""
    mode = f" ({lock_info.mode})" if lock_info.mode else ""
    click.echo(f"Lock: held by {holder}{elapsed}{mode}")
    if lock_info.state is not None:
        click.echo(f"Lock state: {lock_info.state} (iteration {lock_info.iteration})")
    if lock_info.is_stale:
        click.echo(
            "Lock appears stale: the recorded process is not running. "
            "Use `taskloop unlock` to remove it."
        )


@cli.command("unlock")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@config_option
def unlock_command(yes: bool, config_value: str | None) -> None:
    config = _load(config_value)
    lock = LockManager(config.lock_path)
    info = lock.get_lock_info()
    if not info.is_locked:
        click.echo("No lock file found.")
        return
    if not yes and not info.is_stale:
        click.confirm(
            f"Lock is held by PID {info.pid}, which appears to be running. Remove it anyway?",
            abort=True,
        )
    lock.force_release()
    click.echo(f"Removed lock file {config.lock_path}")


def _within(path: Path, root: Path) -> bool:
    return path.resolve().is_relative_to(root.resolve())


@cli.command("clean")
@click.option(
    "--progress",
    "include_progress",
    is_flag=True,
    default=False,
    help="Also delete the progress file.",
)
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@config_option
def clean_command(include_progress: bool, yes: bool, config_value: str | None) -> None:
    """Delete run logs (and optionally the progress file) when no run is active."""
    config = _load(config_value)
    if LockManager(config.lock_path).is_locked():
        raise click.ClickException(
            "Cannot clean while taskloop is running. Wait for the active run to complete "
            "or remove the lock with `taskloop unlock`."
        )
    for path in (config.logs_path, config.progress_path):
        if not _within(path, config.project_root):
            raise click.ClickException(
                f"Configured path resolves outside the project root: {path.resolve()}"
            )

    progress_exists = include_progress and config.progress_path.is_file()
    if not list_run_logs(config.logs_path) and not progress_exists:
        click.echo("Nothing to clean.")
        return
    if progress_exists and not yes:
        click.confirm(f"Delete {config.progress_path}?", abort=True)

    removed, failed = remove_run_logs(config.logs_path)
    if progress_exists:
        try:
            config.progress_path.unlink()
        except OSError as exc:
            logger.warning("Failed to delete %s: %s", config.progress_path, exc)
            failed.append(config.progress_path)
        else:
            removed.append(config.progress_path)
    if failed:
        raise click.ClickException(
            "Failed to delete: " + ", ".join(str(path) for path in failed)
        )
    click.echo(f"Cleaned {len(removed)} file(s).")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
