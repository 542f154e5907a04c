from taskloop.state.atomic import atomic_create, atomic_write
from taskloop.state.lock import LockInfo, LockManager
from taskloop.state.progress import (
    ActiveTask,
    OrchestrationState,
    StateEngine,
    StateSnapshot,
    TaskStats,
)

__all__ = [
    "ActiveTask",
    "LockInfo",
    "LockManager",
    "OrchestrationState",
    "StateEngine",
    "StateSnapshot",
    "TaskStats",
    "atomic_create",
    "atomic_write",
]
