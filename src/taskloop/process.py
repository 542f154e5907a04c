from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127
DEFAULT_KILL_GRACE_SECONDS = 5.0


@dataclass(slots=True)
class ProcessResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: int = 0

    @property
    def is_success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def _send(process: asyncio.subprocess.Process, sig: int, *, group: bool) -> None:
    if group and hasattr(os, "killpg"):
        os.killpg(process.pid, sig)
    else:
        process.send_signal(sig)


async def terminate_process(
    process: asyncio.subprocess.Process,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    *,
    group: bool = False,
) -> None:
    if process.returncode is not None:
        return
    try:
        _send(process, signal.SIGTERM, group=group)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        logger.warning("Process %s ignored SIGTERM; sending SIGKILL", process.pid)
        with contextlib.suppress(ProcessLookupError):
            _send(process, signal.SIGKILL, group=group)
        await process.wait()


class ChildRegistry:
    """Tracks live child processes so they can be reaped on shutdown."""

    def __init__(self, grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS) -> None:
        self.grace_seconds = grace_seconds
        self._children: dict[asyncio.subprocess.Process, bool] = {}

    def __len__(self) -> int:
        return len(self._children)

    def track(self, process: asyncio.subprocess.Process, *, group: bool = False) -> None:
        self._children[process] = group

    def forget(self, process: asyncio.subprocess.Process) -> None:
        self._children.pop(process, None)

    async def terminate_all(self) -> None:
        children = list(self._children.items())
        if not children:
            return
        logger.debug("Terminating %d tracked child process(es)", len(children))
        await asyncio.gather(
            *(
                terminate_process(child, self.grace_seconds, group=group)
                for child, group in children
            ),
            return_exceptions=True,
        )
        self._children.clear()

    def kill_all(self) -> None:
        for child, group in list(self._children.items()):
            if child.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    _send(child, signal.SIGKILL, group=group)
        self._children.clear()


def _decode(raw: bytes | None) -> str:
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace")


class ProcessSupervisor:
    """Spawns one external command at a time and waits for it.

    Output is either captured or inherited from the parent. Captured children
    run in their own session and are signalled as a process group, so shell
    pipelines and grandchildren go down together. With a timeout the child
    gets SIGTERM, then SIGKILL after the grace window. Cancelling the awaiting
    task terminates the child the same way before the cancellation propagates.
    """

    def __init__(
        self,
        children: ChildRegistry | None = None,
        *,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ) -> None:
        self.children = children if children is not None else ChildRegistry(kill_grace_seconds)
        self.kill_grace_seconds = kill_grace_seconds

    async def run_exec(
        self,
        argv: list[str],
        *,
        cwd: Path | None = None,
        capture: bool = True,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        if capture:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                env=env if env is not None else os.environ.copy(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                env=env if env is not None else os.environ.copy(),
            )
        return await self._supervise(process, timeout=timeout, group=capture)

    async def run_shell(
        self,
        command: str,
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd) if cwd else None,
            env=env if env is not None else os.environ.copy(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        return await self._supervise(process, timeout=timeout, group=True)

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        *,
        timeout: float | None,
        group: bool,
    ) -> ProcessResult:
        started = time.monotonic()
        self.children.track(process, group=group)
        timed_out = False
        stdout: bytes | None = b""
        stderr: bytes | None = b""
        try:
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
            except TimeoutError:
                timed_out = True
                await terminate_process(process, self.kill_grace_seconds, group=group)
            except asyncio.CancelledError:
                await asyncio.shield(
                    terminate_process(process, self.kill_grace_seconds, group=group)
                )
                raise
        finally:
            self.children.forget(process)

        return_code = process.returncode
        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
        elif return_code is None or return_code < 0:
            # Killed by a signal: no exit status to report.
            exit_code = 1
        else:
            exit_code = return_code
        return ProcessResult(
            exit_code=exit_code,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            timed_out=timed_out,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
