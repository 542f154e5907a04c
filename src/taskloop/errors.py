from __future__ import annotations


class TaskloopError(RuntimeError):
    """Base class for errors surfaced to the operator."""


class ConfigError(TaskloopError):
    """Raised when configuration is malformed or fails validation."""


class StateReadError(TaskloopError):
    """Raised when the progress file exists but cannot be read."""


class AtomicWriteError(TaskloopError):
    """Raised when an atomic write fails; the target file is left untouched."""

    def __init__(self, message: str, *, path: str, errno_code: int | None = None) -> None:
        super().__init__(message)
        self.path = path
        self.errno_code = errno_code


class LockConflictError(TaskloopError):
    """Raised when another orchestrator instance holds the lock."""

    def __init__(self, *, pid: int | None, elapsed: str | None, lock_path: str) -> None:
        pid_text = str(pid) if pid is not None else "unknown"
        elapsed_text = elapsed or "unknown"
        super().__init__(
            f"Another taskloop instance is already running (PID: {pid_text}, "
            f"started: {elapsed_text} ago). Use --force to override or wait for it "
            "to complete."
        )
        self.pid = pid
        self.elapsed = elapsed
        self.lock_path = lock_path


class PreflightError(TaskloopError):
    """Raised when a prerequisite for a run is missing."""

    exit_code = 2

    def __init__(self, message: str, *, checks: list[str]) -> None:
        super().__init__(message)
        self.checks = checks
