"""Crash-safe file writes.

Content goes to a hidden temp file in the target's directory first, then is
moved into place with a single rename (or hard link for exclusive creation).
Readers never observe a partially written target.
"""

from __future__ import annotations

import errno
import os
import secrets
from pathlib import Path

from taskloop.errors import AtomicWriteError

TEMP_PREFIX = ".tmp-"


def _temp_path_for(target: Path) -> Path:
    return target.parent / f"{TEMP_PREFIX}{secrets.token_hex(8)}"


def _write_temp(temp_path: Path, content: str) -> None:
    fd = os.open(temp_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())


def _discard(temp_path: Path) -> None:
    try:
        temp_path.unlink(missing_ok=True)
    except OSError:
        pass


def describe_write_error(exc: BaseException, path: Path | str) -> AtomicWriteError:
    code = exc.errno if isinstance(exc, OSError) else None
    if code == errno.ENOSPC:
        message = f"Disk full: Cannot write to {path}. Free up disk space and try again."
    elif code in (errno.EACCES, errno.EPERM):
        message = (
            f"Permission denied: Cannot write to {path}. "
            "Check file and directory permissions."
        )
    elif code == errno.EROFS:
        message = (
            f"Read-only filesystem: Cannot write to {path}. "
            "The filesystem is mounted read-only."
        )
    elif code == errno.ENOENT:
        message = f"Path not found: Cannot write to {path}. Parent directory may not exist."
    else:
        message = f"Failed to write {path}: {exc}"
    return AtomicWriteError(message, path=str(path), errno_code=code)


def atomic_write(path: Path | str, content: str) -> None:
    target = Path(path)
    temp_path = _temp_path_for(target)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        _write_temp(temp_path, content)
        os.replace(temp_path, target)
    except OSError as exc:
        _discard(temp_path)
        raise describe_write_error(exc, target) from exc


def atomic_create(path: Path | str, content: str) -> None:
    """Write ``content`` to ``path`` only if ``path`` does not exist yet.

    Raises ``FileExistsError`` when another writer got there first. The
    complete content becomes visible in one step, so a concurrent reader sees
    either no file or the whole record.
    """
    target = Path(path)
    temp_path = _temp_path_for(target)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        _write_temp(temp_path, content)
        os.link(temp_path, target)
    except FileExistsError:
        raise
    except OSError as exc:
        raise describe_write_error(exc, target) from exc
    finally:
        _discard(temp_path)
