import json
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from taskloop.errors import LockConflictError
from taskloop.state.lock import LockManager, format_elapsed, parse_lock_content

DEAD_PID = 999_999_999


def _clock(moment: datetime):
    return lambda: moment


def test_acquire_writes_json_record(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    manager = LockManager(lock_path)

    manager.acquire("yolo", state="WORK_LEFT", iteration=0)

    record = json.loads(lock_path.read_text(encoding="utf-8"))
    assert record["pid"] == os.getpid()
    assert record["mode"] == "yolo"
    assert record["state"] == "WORK_LEFT"
    assert record["iteration"] == 0
    assert manager.held


def test_second_acquire_conflicts_with_pid_and_elapsed(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    started = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
    LockManager(lock_path, pid=4242, now=_clock(started)).acquire()
    contender = LockManager(lock_path, pid=4343, now=_clock(started + timedelta(minutes=90)))

    with pytest.raises(LockConflictError) as excinfo:
        contender.acquire()

    assert excinfo.value.pid == 4242
    assert excinfo.value.elapsed == "01:30:00"
    assert "PID: 4242" in str(excinfo.value)
    assert "--force" in str(excinfo.value)
    assert json.loads(lock_path.read_text(encoding="utf-8"))["pid"] == 4242


def test_contender_acquires_after_holder_releases(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    holder = LockManager(lock_path, pid=4242)
    contender = LockManager(lock_path, pid=4343)
    holder.acquire()

    with pytest.raises(LockConflictError):
        contender.acquire()
    holder.release()
    contender.acquire()

    assert contender.held
    assert not holder.held
    assert json.loads(lock_path.read_text(encoding="utf-8"))["pid"] == 4343


def test_concurrent_acquire_has_exactly_one_winner(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"

    def _try(pid: int) -> bool:
        try:
            LockManager(lock_path, pid=pid).acquire()
        except LockConflictError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(_try, range(1000, 1016)))

    assert outcomes.count(True) == 1
    assert [path.name for path in tmp_path.iterdir()] == [".taskloop-lock"]


def test_stale_lock_is_reported_not_removed(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    LockManager(lock_path, pid=DEAD_PID).acquire()
    observer = LockManager(lock_path)

    info = observer.get_lock_info()

    assert info.is_locked
    assert info.pid == DEAD_PID
    assert info.is_stale
    assert observer.is_locked()
    assert lock_path.exists()


def test_live_lock_is_not_stale(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    LockManager(lock_path).acquire()

    assert LockManager(lock_path, pid=1).get_lock_info().is_stale is False


def test_garbage_lock_counts_as_locked(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    lock_path.write_text("\x00\x01 not a lock", encoding="utf-8")

    info = LockManager(lock_path).get_lock_info()

    assert info.is_locked
    assert info.pid is None
    assert info.elapsed is None
    with pytest.raises(LockConflictError, match="PID: unknown"):
        LockManager(lock_path).acquire()


def test_legacy_text_lock_is_parsed(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    lock_path.write_text("Started: 2026-01-01 10:00:00\nPID: 4242", encoding="utf-8")
    started = datetime(2026, 1, 1, 10, 0, 0).astimezone()

    info = LockManager(lock_path, now=_clock(started + timedelta(seconds=75))).get_lock_info()

    assert info.pid == 4242
    assert info.started_at == started
    assert info.elapsed == "00:01:15"
    assert info.mode == "run"


def test_parse_lock_content_rejects_non_records() -> None:
    assert parse_lock_content("[1, 2]") is None
    assert parse_lock_content('{"mode": "run"}') is None
    assert parse_lock_content("") is None


def test_update_refreshes_metadata(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    manager = LockManager(lock_path)
    manager.acquire()

    manager.update(state="IN_REVIEW", iteration=3)

    info = manager.get_lock_info()
    assert info.state == "IN_REVIEW"
    assert info.iteration == 3


def test_release_is_idempotent_and_only_removes_own_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    bystander = LockManager(lock_path, pid=7)
    bystander.release()
    owner = LockManager(lock_path)
    owner.acquire()

    bystander.release()
    assert lock_path.exists()

    owner.release()
    owner.release()
    assert not lock_path.exists()


def test_release_leaves_a_lock_taken_over_by_another_process(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    original = LockManager(lock_path)
    original.acquire()
    usurper = LockManager(lock_path, pid=4242)
    usurper.force_release()
    usurper.acquire()

    original.release()

    assert json.loads(lock_path.read_text(encoding="utf-8"))["pid"] == 4242


def test_force_release_removes_any_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / ".taskloop-lock"
    LockManager(lock_path, pid=4242).acquire()

    assert LockManager(lock_path).force_release() is True
    assert not lock_path.exists()
    assert LockManager(lock_path).force_release() is False


def test_format_elapsed_keeps_counting_hours_past_a_day() -> None:
    start = datetime(2026, 1, 1, tzinfo=UTC)

    assert format_elapsed(start, start + timedelta(hours=26, seconds=5)) == "26:00:05"
    assert format_elapsed(start, start - timedelta(seconds=5)) == "00:00:00"
