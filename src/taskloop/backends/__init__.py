from taskloop.backends.base import (
    AgentRunResult,
    BackendExecutionError,
    BackendProcessError,
    WorkerBackend,
    WorkerNotFoundError,
)
from taskloop.backends.cli import CLIWorkerBackend
from taskloop.backends.resilient import ResilientWorker, RetryPolicy

__all__ = [
    "AgentRunResult",
    "BackendExecutionError",
    "BackendProcessError",
    "CLIWorkerBackend",
    "ResilientWorker",
    "RetryPolicy",
    "WorkerBackend",
    "WorkerNotFoundError",
]
