from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from taskloop.process import ProcessResult


class BackendExecutionError(RuntimeError):
    """Raised when a worker process cannot be run at all."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendProcessError(BackendExecutionError):
    """Raised when the worker process fails to spawn."""


class WorkerNotFoundError(BackendProcessError):
    """Raised when the worker executable is missing from PATH."""


@dataclass(slots=True)
class AgentRunResult:
    is_success: bool
    exit_code: int
    error: str | None = None


class WorkerBackend(ABC):
    name: str = "worker"

    @abstractmethod
    def build_command(self, phase: str, prompt: str | None = None) -> list[str]:
        """Return the argument vector for one phase invocation."""

    @abstractmethod
    async def execute(self, phase: str, prompt: str | None = None) -> ProcessResult:
        """Run the worker for ``phase`` once and report how it exited."""
