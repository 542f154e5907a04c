"""Orchestration state derived from the markdown progress file.

The file is the single source of truth: every query recomputes the state from
its task table. Reads are cached per engine for a short TTL so that a state,
stats and active-task lookup in quick succession share one file read.
"""

from __future__ import annotations

import enum
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from taskloop.errors import StateReadError
from taskloop.state.atomic import atomic_write

if TYPE_CHECKING:
    from taskloop.gate import GateResult

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 0.2

BLOCKED_PATTERN = re.compile(r"TASK_\d+\s*\|.*BLOCKED", re.IGNORECASE)
IN_REVIEW_PATTERN = re.compile(r"TASK_\d+\s*\|.*IN.REVIEW", re.IGNORECASE)
WORK_LEFT_PATTERN = re.compile(r"TASK_\d+\s*\|.*(NOT STARTED|IN PROGRESS)", re.IGNORECASE)
TASK_ROW_PATTERN = re.compile(r"^\s*\|\s*TASK_\d+\s*\|", re.IGNORECASE)

STATUS_VOCABULARY = frozenset(
    {
        "NOT STARTED",
        "IN PROGRESS",
        "IN_REVIEW",
        "IN REVIEW",
        "BLOCKED",
        "COMPLETE",
        "COMPLETED",
        "DONE",
    }
)
COMPLETED_STATUSES = frozenset({"COMPLETE", "COMPLETED", "DONE"})
IN_REVIEW_STATUSES = frozenset({"IN_REVIEW", "IN REVIEW"})
REMAINING_STATUSES = frozenset({"NOT STARTED", "IN PROGRESS"})
ACTIVE_STATUSES = frozenset({"IN PROGRESS", "IN_REVIEW", "IN REVIEW"})

# Task tables are | id | title | file | status | priority | complexity | deps |.
STATUS_COLUMNS = range(3, 6)
MIN_STATS_CELLS = 7
MIN_ACTIVE_CELLS = 4

FIX_SECTION_HEADING = "### For Fix Agent"
MAX_ERROR_LENGTH = 500
NEXT_SECTION_PATTERN = re.compile(r"\n(?=#{2,3}\s|---\s*$)", re.MULTILINE)
EMPTY_CELL = "-"


class OrchestrationState(str, enum.Enum):
    WORK_LEFT = "WORK_LEFT"
    IN_REVIEW = "IN_REVIEW"
    BLOCKED = "BLOCKED"
    DONE = "DONE"
    NO_STATE = "NO_STATE"


@dataclass(slots=True)
class TaskStats:
    total: int = 0
    completed: int = 0
    remaining: int = 0
    in_review: int = 0
    blocked: int = 0


@dataclass(slots=True)
class ActiveTask:
    id: str
    title: str
    status: str


@dataclass(slots=True)
class StateSnapshot:
    state: OrchestrationState
    stats: TaskStats = field(default_factory=TaskStats)
    active_task: ActiveTask | None = None


@dataclass(slots=True)
class StateCacheEntry:
    lines: list[str] | None
    captured_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.captured_at < self.ttl


def classify(content: str) -> OrchestrationState:
    if BLOCKED_PATTERN.search(content):
        return OrchestrationState.BLOCKED
    if IN_REVIEW_PATTERN.search(content):
        return OrchestrationState.IN_REVIEW
    if WORK_LEFT_PATTERN.search(content):
        return OrchestrationState.WORK_LEFT
    return OrchestrationState.DONE


def row_status(cells: list[str]) -> str | None:
    for index in STATUS_COLUMNS:
        if index >= len(cells):
            break
        value = cells[index].strip().upper()
        if value in STATUS_VOCABULARY:
            return value
    return None


def compute_stats(lines: list[str]) -> TaskStats:
    stats = TaskStats()
    for line in lines:
        if not TASK_ROW_PATTERN.match(line):
            continue
        cells = line.split("|")
        if len(cells) < MIN_STATS_CELLS:
            continue
        status = row_status(cells)
        if status is None:
            continue
        stats.total += 1
        if status in COMPLETED_STATUSES:
            stats.completed += 1
        elif status == "BLOCKED":
            stats.blocked += 1
        elif status in IN_REVIEW_STATUSES:
            stats.in_review += 1
        elif status in REMAINING_STATUSES:
            stats.remaining += 1
    return stats


def find_active_task(lines: list[str]) -> ActiveTask | None:
    for line in lines:
        if not TASK_ROW_PATTERN.match(line):
            continue
        cells = line.split("|")
        if len(cells) < MIN_ACTIVE_CELLS:
            continue
        status = row_status(cells)
        if status in ACTIVE_STATUSES:
            return ActiveTask(id=cells[1].strip(), title=cells[2].strip(), status=status)
    return None


def _one_line(text: str, max_length: int = MAX_ERROR_LENGTH) -> str:
    flattened = re.sub(r"[\r\n]+", " ", text).strip()
    if len(flattened) <= max_length:
        return flattened
    return flattened[:max_length] + "..."


def render_failure_table(task: ActiveTask | None, gate_result: GateResult) -> str:
    failed = gate_result.failed
    first = failed[0] if failed else None
    task_value = f"{task.id}: {task.title}" if task else EMPTY_CELL
    failed_value = ", ".join(result.command for result in failed) if failed else EMPTY_CELL
    if first is not None:
        error_value = _one_line(first.stderr or gate_result.error or "")
        hint_value = f"`{first.command}` exited with code {first.exit_code}"
    else:
        error_value = hint_value = EMPTY_CELL
    return "\n".join(
        [
            FIX_SECTION_HEADING,
            "",
            "| Field           | Value |",
            "| --------------- | ----- |",
            f"| Task            | {task_value} |",
            f"| Failed Gate     | {failed_value} |",
            f"| Primary Error   | {error_value or EMPTY_CELL} |",
            f"| Root Cause Hint | {hint_value} |",
        ]
    )


class StateEngine:
    def __init__(
        self,
        path: Path,
        *,
        ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = path
        self.ttl = ttl
        self._clock = clock
        self._cache: StateCacheEntry | None = None

    def reset_cache(self) -> None:
        self._cache = None

    def _read_content(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            raise StateReadError(f"Progress file {self.path} is not valid UTF-8: {exc}") from exc
        except OSError as exc:
            raise StateReadError(f"Cannot read progress file {self.path}: {exc}") from exc

    def _read_lines(self) -> list[str] | None:
        content = self._read_content()
        return content.splitlines() if content is not None else None

    def _lines(self, *, force_refresh: bool = False, ttl: float | None = None) -> list[str] | None:
        now = self._clock()
        if not force_refresh and self._cache is not None and self._cache.is_fresh(now):
            return self._cache.lines
        lines = self._read_lines()
        self._cache = StateCacheEntry(
            lines=lines, captured_at=now, ttl=self.ttl if ttl is None else ttl
        )
        return lines

    def query(self, *, force_refresh: bool = False, ttl: float | None = None) -> StateSnapshot:
        lines = self._lines(force_refresh=force_refresh, ttl=ttl)
        if lines is None:
            return StateSnapshot(state=OrchestrationState.NO_STATE)
        return StateSnapshot(
            state=classify("\n".join(lines)),
            stats=compute_stats(lines),
            active_task=find_active_task(lines),
        )

    def get_state(self, *, force_refresh: bool = False) -> OrchestrationState:
        lines = self._lines(force_refresh=force_refresh)
        if lines is None:
            return OrchestrationState.NO_STATE
        return classify("\n".join(lines))

    def get_task_stats(self, *, force_refresh: bool = False) -> TaskStats:
        lines = self._lines(force_refresh=force_refresh)
        return compute_stats(lines) if lines is not None else TaskStats()

    def get_active_task(self, *, force_refresh: bool = False) -> ActiveTask | None:
        lines = self._lines(force_refresh=force_refresh)
        return find_active_task(lines) if lines is not None else None

    def write_failure_notes(self, gate_result: GateResult) -> bool:
        """Fill the fix-agent table with the gate failure details.

        Returns ``False`` (after logging a warning) when the progress file or
        the section is missing; the loop carries on either way.
        """
        content = self._read_content()
        if content is None:
            logger.warning("%s not found; skipping failure notes", self.path)
            return False
        section_index = content.find(FIX_SECTION_HEADING)
        if section_index == -1:
            logger.warning(
                '"%s" section not found in %s; skipping failure notes',
                FIX_SECTION_HEADING,
                self.path,
            )
            return False

        task = find_active_task(content.splitlines())
        after_heading = section_index + len(FIX_SECTION_HEADING)
        match = NEXT_SECTION_PATTERN.search(content, after_heading)
        end = match.start() if match else len(content)
        updated = (
            content[:section_index] + render_failure_table(task, gate_result) + content[end:]
        )
        atomic_write(self.path, updated)
        self.reset_cache()
        return True
