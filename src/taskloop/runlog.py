from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

if TYPE_CHECKING:
    from taskloop.gate import GateResult

logger = logging.getLogger(__name__)

RUN_LOG_GLOB = "run-*.log"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RunLog:
    """Append-only audit trail for one orchestrator run.

    A run log that cannot be opened or written degrades to a no-op sink; the
    loop never fails because of it.
    """

    def __init__(
        self,
        handle: IO[str] | None = None,
        path: Path | None = None,
        *,
        clock: Callable[[], str] = _utcnow_iso,
    ) -> None:
        self._handle = handle
        self.path = path
        self._clock = clock

    @classmethod
    def open(cls, logs_dir: Path, *, pid: int | None = None) -> RunLog:
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        path = logs_dir / f"run-{stamp}.log"
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            handle = path.open("a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot open run log in %s: %s; continuing without it", logs_dir, exc)
            return cls.null()
        run_log = cls(handle, path)
        run_log.write("=== taskloop run ===")
        run_log.write(f"Started: {_utcnow_iso()}")
        run_log.write(f"PID: {pid if pid is not None else os.getpid()}")
        run_log.write("")
        return run_log

    @classmethod
    def null(cls) -> RunLog:
        return cls(None, None)

    @property
    def enabled(self) -> bool:
        return self._handle is not None

    def write(self, line: str) -> None:
        if self._handle is None:
            return
        try:
            self._handle.write(line + "\n")
            self._handle.flush()
        except OSError as exc:
            logger.warning("Run log write failed: %s; disabling run log", exc)
            self._handle = None

    def event(self, text: str) -> None:
        self.write(f"[{self._clock()}] {text}")

    def iteration(self, number: int, event: str) -> None:
        self.event(f"ITERATION {number} {event}")

    def state(self, state: str) -> None:
        self.event(f"STATE {state}")

    def agent(self, phase: str, event: str, attempt: int | None = None) -> None:
        suffix = f" (attempt {attempt})" if attempt else ""
        self.event(f"AGENT {phase.upper()} {event}{suffix}")

    def gate(self, result: GateResult) -> None:
        self.event(f"GATE {'PASSED' if result.is_success else 'FAILED'}")
        for command in result.results:
            status = "PASS" if command.is_success else f"FAIL (exit {command.exit_code})"
            self.write(f"  - {command.command}: {status}")

    def worker_event(self, event: dict[str, Any]) -> None:
        kind = event.get("event")
        phase = str(event.get("phase", "")).upper()
        if kind == "worker_retry":
            self.event(
                f"RETRY {phase} attempt {event.get('attempt')} "
                f"after {event.get('delay_seconds', 0):.1f}s "
                f"(last exit {event.get('exit_code')})"
            )
        elif kind == "worker_attempt_failed":
            detail = event.get("error") or f"exit {event.get('exit_code')}"
            self.event(f"ATTEMPT FAILED {phase} attempt {event.get('attempt')}: {detail}")

    def close(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            handle.close()
        except OSError as exc:
            logger.warning("Failed to close run log: %s", exc)


def list_run_logs(logs_dir: Path) -> list[Path]:
    if not logs_dir.is_dir():
        return []
    return sorted(path for path in logs_dir.glob(RUN_LOG_GLOB) if path.is_file())


def remove_run_logs(logs_dir: Path) -> tuple[list[Path], list[Path]]:
    """Delete every run log in ``logs_dir``; returns (removed, failed)."""
    removed: list[Path] = []
    failed: list[Path] = []
    for path in list_run_logs(logs_dir):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Failed to delete %s: %s", path, exc)
            failed.append(path)
            continue
        logger.debug("Deleted %s", path)
        removed.append(path)
    return removed, failed
