from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from taskloop.backends.base import AgentRunResult, BackendExecutionError, WorkerBackend
from taskloop.config import RetryConfig

logger = logging.getLogger(__name__)

WorkerEventHook = Callable[[dict[str, Any]], None]
SleepFn = Callable[[float], Awaitable[Any]]

ERROR_TAIL_CHARS = 400


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 4.0
    # rate limit, CURLE_GOT_NOTHING, timeout, CURLE_COULDNT_CONNECT, CURLE_COULDNT_RESOLVE_HOST
    retryable_exit_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({429, 52, 124, 7, 6})
    )

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_retries=max(0, int(config.max_retries)),
            base_delay=max(0.0, float(config.base_delay_seconds)),
            max_delay=max(0.0, float(config.max_delay_seconds)),
            retryable_exit_codes=frozenset(int(code) for code in config.retryable_exit_codes),
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def is_retryable(self, exit_code: int) -> bool:
        return exit_code in self.retryable_exit_codes


class ResilientWorker:
    """Runs a worker phase with retry on transient exit codes and spawn errors."""

    def __init__(
        self,
        backend: WorkerBackend,
        retry_policy: RetryPolicy | None = None,
        *,
        event_hook: WorkerEventHook | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _exit_message(exit_code: int, stderr: str) -> str:
        message = f"Agent exited with code {exit_code}"
        tail = stderr.strip()[-ERROR_TAIL_CHARS:]
        return f"{message}: {tail}" if tail else message

    async def run_agent(self, phase: str, prompt: str | None = None) -> AgentRunResult:
        policy = self.retry_policy
        last_error: BackendExecutionError | None = None
        last_exit_code = 1

        for attempt in range(policy.max_retries + 1):
            if attempt > 0:
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Retry %d/%d for %s after %.1fs...", attempt, policy.max_retries, phase, delay
                )
                self._emit(
                    {
                        "event": "worker_retry",
                        "phase": phase,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "exit_code": last_exit_code,
                        "error": str(last_error) if last_error else None,
                    }
                )
                await self._sleep(delay)

            try:
                result = await self.backend.execute(phase, prompt)
            except BackendExecutionError as exc:
                self._emit(
                    {
                        "event": "worker_attempt_failed",
                        "phase": phase,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                if not exc.retriable:
                    return AgentRunResult(
                        is_success=False,
                        exit_code=exc.exit_code if exc.exit_code is not None else 1,
                        error=str(exc),
                    )
                last_error = exc
                last_exit_code = exc.exit_code if exc.exit_code is not None else 1
                continue

            if result.exit_code == 0:
                self._emit({"event": "worker_success", "phase": phase, "attempt": attempt})
                return AgentRunResult(is_success=True, exit_code=0)

            last_error = None
            last_exit_code = result.exit_code
            retriable = policy.is_retryable(result.exit_code)
            self._emit(
                {
                    "event": "worker_attempt_failed",
                    "phase": phase,
                    "attempt": attempt,
                    "exit_code": result.exit_code,
                    "retriable": retriable,
                }
            )
            if not retriable:
                return AgentRunResult(
                    is_success=False,
                    exit_code=result.exit_code,
                    error=self._exit_message(result.exit_code, result.stderr),
                )

        return AgentRunResult(
            is_success=False,
            exit_code=last_exit_code,
            error=str(last_error) if last_error else f"Failed after {policy.max_retries} retries",
        )
