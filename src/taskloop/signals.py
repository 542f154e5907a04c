"""Cleanup registry and interrupt/terminate handling for one orchestrator run.

Cleanup callbacks run last-registered-first. The first SIGINT (or a SIGTERM)
cancels the main task so the run unwinds through its ``finally`` blocks and
drains the registry; a second SIGINT skips cleanup and exits on the spot.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from taskloop.process import ChildRegistry

logger = logging.getLogger(__name__)

CleanupHandler = Callable[[], Awaitable[None] | None]

CLEANUP_TIMEOUT_SECONDS = 5.0
SIGINT_EXIT_CODE = 128 + signal.SIGINT
SIGTERM_EXIT_CODE = 128 + signal.SIGTERM


class CleanupScope:
    def __init__(self) -> None:
        self._handlers: list[CleanupHandler] = []
        self._drained = False

    def __len__(self) -> int:
        return len(self._handlers)

    @property
    def drained(self) -> bool:
        return self._drained

    def register(self, handler: CleanupHandler) -> CleanupHandler:
        self._handlers.append(handler)
        return handler

    def unregister(self, handler: CleanupHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def clear(self) -> None:
        self._handlers.clear()

    async def _run_handlers(self) -> None:
        while self._handlers:
            handler = self._handlers.pop()
            try:
                outcome = handler()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Cleanup handler %r failed", handler)

    async def drain(self, timeout: float = CLEANUP_TIMEOUT_SECONDS) -> bool:
        """Run every registered handler once, newest first.

        Returns ``False`` if the handlers did not finish within ``timeout``;
        the remaining handlers are abandoned so exit can proceed.
        """
        if self._drained:
            return True
        self._drained = True
        try:
            await asyncio.wait_for(self._run_handlers(), timeout=timeout)
        except TimeoutError:
            logger.error("Cleanup did not complete within %.1fs; continuing exit", timeout)
            self._handlers.clear()
            return False
        return True


class SignalCoordinator:
    def __init__(
        self,
        scope: CleanupScope,
        children: ChildRegistry | None = None,
        *,
        force_exit: Callable[[int], Any] = os._exit,
    ) -> None:
        self.scope = scope
        self.children = children
        self.received: signal.Signals | None = None
        self._force_exit = force_exit
        self._task: asyncio.Task[Any] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[signal.Signals] = []

    @property
    def exit_code(self) -> int | None:
        if self.received is None:
            return None
        return 128 + int(self.received)

    def install(self, task: asyncio.Task[Any]) -> None:
        self._task = task
        self._loop = asyncio.get_running_loop()
        if sys.platform == "win32":
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.add_signal_handler(sig, self.handle_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Could not install handler for %s", sig.name)
                continue
            self._installed.append(sig)

    def detach(self) -> None:
        """Stop cancelling the main task but keep the handlers installed.

        Used while cleanup drains: a first signal is only recorded, and a
        second SIGINT still force-exits.
        """
        self._task = None

    def remove(self) -> None:
        if self._loop is not None:
            for sig in self._installed:
                self._loop.remove_signal_handler(sig)
        self._installed.clear()
        self._task = None

    def handle_signal(self, sig: signal.Signals) -> None:
        if sig == signal.SIGINT and self.received == signal.SIGINT:
            logger.warning("Second interrupt received; force exiting")
            if self.children is not None:
                self.children.kill_all()
            self._force_exit(SIGINT_EXIT_CODE)
            return

        if self.received is not None:
            return
        self.received = sig
        if sig == signal.SIGINT:
            logger.warning("Interrupted. Cleaning up...")
        else:
            logger.warning("Received %s. Shutting down gracefully...", sig.name)
        if self._task is not None and not self._task.done():
            self._task.cancel()
