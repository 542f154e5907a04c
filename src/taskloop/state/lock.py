from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskloop.errors import LockConflictError
from taskloop.state.atomic import atomic_create, atomic_write

logger = logging.getLogger(__name__)

LEGACY_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(slots=True)
class LockRecord:
    pid: int | None
    started_at: str
    mode: str = "run"
    state: str | None = None
    iteration: int | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2) + "\n"

    @property
    def started(self) -> datetime | None:
        return parse_timestamp(self.started_at)


@dataclass(slots=True)
class LockInfo:
    is_locked: bool
    pid: int | None = None
    started_at: datetime | None = None
    mode: str | None = None
    state: str | None = None
    iteration: int | None = None
    elapsed: str | None = None
    is_stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_locked": self.is_locked,
            "pid": self.pid,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "mode": self.mode,
            "state": self.state,
            "iteration": self.iteration,
            "elapsed": self.elapsed,
            "is_stale": self.is_stale,
        }


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = datetime.strptime(value, LEGACY_TIMESTAMP_FORMAT)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        # Naive timestamps were written in local time.
        parsed = parsed.astimezone()
    return parsed


def format_elapsed(started: datetime, now: datetime) -> str:
    seconds = max(0, int((now - started).total_seconds()))
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def _parse_legacy(content: str) -> LockRecord | None:
    pid: int | None = None
    started = ""
    for line in content.splitlines():
        if line.startswith("Started: "):
            started = line[len("Started: ") :].strip()
        elif line.startswith("PID: "):
            try:
                pid = int(line[len("PID: ") :].strip(), 10)
            except ValueError:
                pid = None
    if pid is None and not started:
        return None
    return LockRecord(pid=pid, started_at=started)


def parse_lock_content(content: str) -> LockRecord | None:
    """Parse a JSON lock record, falling back to the plain-text format."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return _parse_legacy(content)
    if not isinstance(data, dict):
        return None
    try:
        return LockRecord(
            pid=int(data["pid"]),
            started_at=str(data.get("started_at") or ""),
            mode=str(data.get("mode") or "run"),
            state=data.get("state"),
            iteration=data.get("iteration"),
        )
    except (KeyError, TypeError, ValueError):
        return None


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class LockManager:
    """Single-instance lock backed by one file on disk.

    Acquisition is exclusive: the record is written to a temp file and hard
    linked into place, so concurrent acquirers get exactly one winner. Reading
    the lock never removes it, even when the recorded process is gone.
    """

    def __init__(
        self,
        path: Path,
        *,
        pid: int | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.path = path
        self.pid = pid if pid is not None else os.getpid()
        self._now = now
        self._record: LockRecord | None = None

    @property
    def held(self) -> bool:
        return self._record is not None

    def acquire(
        self,
        mode: str = "run",
        *,
        state: str | None = None,
        iteration: int | None = None,
    ) -> LockRecord:
        record = LockRecord(
            pid=self.pid,
            started_at=self._now().replace(microsecond=0).isoformat(),
            mode=mode,
            state=state,
            iteration=iteration,
        )
        try:
            atomic_create(self.path, record.to_json())
        except FileExistsError:
            info = self.get_lock_info()
            raise LockConflictError(
                pid=info.pid, elapsed=info.elapsed, lock_path=str(self.path)
            ) from None
        self._record = record
        logger.debug("Acquired lock %s (pid %d, mode %s)", self.path, self.pid, mode)
        return record

    def is_locked(self) -> bool:
        return self.path.exists()

    def _read_record(self) -> LockRecord | None:
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError:
            return None
        return parse_lock_content(content)

    def get_lock_info(self) -> LockInfo:
        if not self.path.exists():
            return LockInfo(is_locked=False)
        record = self._read_record()
        if record is None:
            return LockInfo(is_locked=True)
        started = record.started
        pid = record.pid if record.pid and record.pid > 0 else None
        return LockInfo(
            is_locked=True,
            pid=pid,
            started_at=started,
            mode=record.mode,
            state=record.state,
            iteration=record.iteration,
            elapsed=format_elapsed(started, self._now()) if started else None,
            is_stale=pid is not None and not pid_alive(pid),
        )

    def _still_ours(self) -> bool:
        record = self._read_record()
        return record is not None and record.pid == self.pid

    def update(self, *, state: str | None = None, iteration: int | None = None) -> None:
        if self._record is None:
            return
        if not self._still_ours():
            logger.warning("Lock %s is no longer held by this process", self.path)
            self._record = None
            return
        if state is not None:
            self._record.state = state
        if iteration is not None:
            self._record.iteration = iteration
        atomic_write(self.path, self._record.to_json())

    def release(self) -> None:
        if self._record is None:
            return
        self._record = None
        if not self._still_ours():
            logger.warning("Lock %s was taken over; leaving it in place", self.path)
            return
        self.path.unlink(missing_ok=True)
        logger.debug("Released lock %s", self.path)

    def force_release(self) -> bool:
        existed = self.path.exists()
        self.path.unlink(missing_ok=True)
        self._record = None
        if existed:
            logger.warning("Force-released lock %s", self.path)
        return existed
