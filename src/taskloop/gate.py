from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from taskloop.process import NOT_FOUND_EXIT_CODE, ProcessSupervisor

logger = logging.getLogger(__name__)

DEFAULT_GATE_TIMEOUT_SECONDS = 300.0
OUTPUT_TAIL_CHARS = 4000


@dataclass(slots=True)
class GateCommandResult:
    command: str
    is_success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0


@dataclass(slots=True)
class GateResult:
    is_success: bool
    results: list[GateCommandResult] = field(default_factory=list)
    total_duration_ms: int = 0
    error: str | None = None

    @property
    def failed(self) -> list[GateCommandResult]:
        return [result for result in self.results if not result.is_success]

    @property
    def first_failure(self) -> GateCommandResult | None:
        for result in self.results:
            if not result.is_success:
                return result
        return None


def can_retry(attempts: int, max_fix_attempts: int) -> bool:
    return attempts < max_fix_attempts


def _failure_text(result: GateCommandResult) -> str:
    text = result.stderr.strip() or result.stdout.strip()
    return text or f"`{result.command}` exited with code {result.exit_code}"


class GateRunner:
    """Runs the configured quality commands in order and reports every outcome."""

    def __init__(
        self,
        commands: Sequence[str],
        *,
        timeout: float = DEFAULT_GATE_TIMEOUT_SECONDS,
        cwd: Path | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self.commands = list(commands)
        self.timeout = timeout
        self.cwd = cwd
        self.supervisor = supervisor or ProcessSupervisor()

    async def run_command(self, command: str) -> GateCommandResult:
        command_text = command.strip()
        if not command_text:
            return GateCommandResult(
                command=command, is_success=False, exit_code=1, stderr="Command is empty."
            )

        started = time.monotonic()
        logger.debug("Running gate: %s", command_text)
        try:
            result = await self.supervisor.run_shell(
                command_text, cwd=self.cwd, timeout=self.timeout
            )
        except OSError as exc:
            return GateCommandResult(
                command=command,
                is_success=False,
                exit_code=NOT_FOUND_EXIT_CODE,
                stderr=str(exc),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        stderr = result.stderr
        if result.timed_out:
            stderr = f"Command timed out after {round(self.timeout * 1000)}ms"
        return GateCommandResult(
            command=command,
            is_success=result.is_success,
            exit_code=result.exit_code,
            stdout=result.stdout[-OUTPUT_TAIL_CHARS:],
            stderr=stderr[-OUTPUT_TAIL_CHARS:],
            duration_ms=result.duration_ms,
        )

    async def run(self) -> GateResult:
        if not self.commands:
            return GateResult(is_success=True)

        started = time.monotonic()
        results: list[GateCommandResult] = []
        for command in self.commands:
            result = await self.run_command(command)
            level = logging.DEBUG if result.is_success else logging.INFO
            logger.log(level, "Gate %s: exit %d", command, result.exit_code)
            results.append(result)

        gate = GateResult(
            is_success=all(result.is_success for result in results),
            results=results,
            total_duration_ms=int((time.monotonic() - started) * 1000),
        )
        failure = gate.first_failure
        if failure is not None:
            gate.error = _failure_text(failure)
        return gate
