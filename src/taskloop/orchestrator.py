from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from taskloop.backends.base import AgentRunResult
from taskloop.backends.cli import CLIWorkerBackend
from taskloop.backends.resilient import ResilientWorker, RetryPolicy
from taskloop.config import TaskloopConfig
from taskloop.errors import AtomicWriteError, LockConflictError
from taskloop.gate import GateResult, GateRunner, can_retry
from taskloop.process import ChildRegistry, ProcessSupervisor
from taskloop.runlog import RunLog
from taskloop.signals import CleanupScope, SignalCoordinator
from taskloop.state.lock import LockManager
from taskloop.state.progress import OrchestrationState, StateEngine

logger = logging.getLogger(__name__)

PHASE_FOR_STATE: dict[OrchestrationState, str] = {
    OrchestrationState.WORK_LEFT: "impl",
    OrchestrationState.IN_REVIEW: "review",
    OrchestrationState.BLOCKED: "tidy",
}

PHASE_LABELS = {
    "impl": "implementation",
    "fix": "fix",
    "review": "review",
    "tidy": "tidy",
}


@dataclass(slots=True)
class RunOutcome:
    exit_code: int
    reason: str
    iterations: int


def planned_action(state: OrchestrationState) -> str:
    if state is OrchestrationState.DONE:
        return "exit: all tasks complete"
    if state is OrchestrationState.NO_STATE:
        return "exit: progress file not found"
    phase = PHASE_FOR_STATE[state]
    if phase == "impl":
        return "run impl agent, then gates (fix agent on gate failure)"
    return f"run {phase} agent"


class LoopOrchestrator:
    def __init__(
        self,
        config: TaskloopConfig,
        state_engine: StateEngine,
        worker: ResilientWorker,
        gate_runner: GateRunner,
        run_log: RunLog | None = None,
        *,
        lock: LockManager | None = None,
    ) -> None:
        self.config = config
        self.state = state_engine
        self.worker = worker
        self.gates = gate_runner
        self.run_log = run_log or RunLog.null()
        self.lock = lock

    async def run(self, max_iterations: int | None = None) -> RunOutcome:
        limit = max_iterations if max_iterations is not None else self.config.loop.max_iterations
        iteration = 0
        while iteration < limit:
            iteration += 1
            self.run_log.iteration(iteration, "START")
            logger.info("--- Iteration %d/%d ---", iteration, limit)

            snapshot = self.state.query(force_refresh=True)
            self.run_log.state(snapshot.state.value)
            self._refresh_lock(snapshot.state, iteration)
            stats = snapshot.stats
            logger.info(
                "State %s (%d/%d complete, %d remaining, %d in review, %d blocked)",
                snapshot.state.value,
                stats.completed,
                stats.total,
                stats.remaining,
                stats.in_review,
                stats.blocked,
            )
            if snapshot.active_task is not None:
                logger.info(
                    "Active task: %s %s", snapshot.active_task.id, snapshot.active_task.title
                )

            if snapshot.state is OrchestrationState.DONE:
                logger.info("All tasks complete")
                self.run_log.iteration(iteration, "DONE")
                return RunOutcome(exit_code=0, reason="done", iterations=iteration)
            if snapshot.state is OrchestrationState.NO_STATE:
                logger.error(
                    "Progress file %s not found. Run `taskloop init` and create it first.",
                    self.state.path,
                )
                return RunOutcome(exit_code=1, reason="no_state", iterations=iteration)

            if snapshot.state is OrchestrationState.WORK_LEFT:
                await self.handle_work_left()
            elif snapshot.state is OrchestrationState.IN_REVIEW:
                await self._run_phase("review")
            elif snapshot.state is OrchestrationState.BLOCKED:
                await self._run_phase("tidy")

            self.run_log.iteration(iteration, "END")

        logger.warning("Max iterations (%d) reached. Exiting.", limit)
        return RunOutcome(exit_code=0, reason="max_iterations", iterations=iteration)

    def _refresh_lock(self, state: OrchestrationState, iteration: int) -> None:
        if self.lock is None:
            return
        try:
            self.lock.update(state=state.value, iteration=iteration)
        except AtomicWriteError as exc:
            logger.warning("Could not refresh lock metadata: %s", exc)

    async def _run_phase(self, phase: str, attempt: int | None = None) -> AgentRunResult:
        logger.info("Dispatching %s agent...", PHASE_LABELS.get(phase, phase))
        self.run_log.agent(phase, "START", attempt)
        result = await self.worker.run_agent(phase)
        self.run_log.agent(phase, "SUCCESS" if result.is_success else "FAILED", attempt)
        if not result.is_success:
            logger.error(
                "%s agent failed: %s",
                PHASE_LABELS.get(phase, phase).capitalize(),
                result.error or "Unknown error",
            )
        return result

    async def _run_gates(self) -> GateResult:
        logger.info("Running gate commands...")
        result = await self.gates.run()
        self.run_log.gate(result)
        if not result.is_success:
            try:
                self.state.write_failure_notes(result)
            except AtomicWriteError as exc:
                logger.warning("Could not write failure notes: %s", exc)
        return result

    async def handle_work_left(self) -> None:
        impl = await self._run_phase("impl")
        if not impl.is_success:
            return

        gate = await self._run_gates()
        if gate.is_success:
            logger.info("All gates passed")
            return

        max_attempts = self.config.gate.max_fix_attempts
        attempts = 0
        while can_retry(attempts, max_attempts):
            attempts += 1
            logger.warning(
                "Gate failed. Running fix agent (attempt %d/%d)...", attempts, max_attempts
            )
            fix = await self._run_phase("fix", attempts)
            if not fix.is_success:
                return
            gate = await self._run_gates()
            if gate.is_success:
                logger.info("Gates passed after fix")
                return

        logger.error("Gates still failing after %d fix attempt(s)", attempts)


def build_orchestrator(
    config: TaskloopConfig,
    *,
    supervisor: ProcessSupervisor | None = None,
    run_log: RunLog | None = None,
    lock: LockManager | None = None,
) -> LoopOrchestrator:
    supervisor = supervisor or ProcessSupervisor()
    run_log = run_log or RunLog.null()
    worker = ResilientWorker(
        CLIWorkerBackend.from_config(config, supervisor),
        RetryPolicy.from_config(config.retry),
        event_hook=run_log.worker_event,
    )
    gates = GateRunner(
        config.gate.commands,
        timeout=config.gate.timeout_seconds,
        cwd=config.project_root,
        supervisor=supervisor,
    )
    return LoopOrchestrator(
        config, StateEngine(config.progress_path), worker, gates, run_log, lock=lock
    )


async def run_loop(
    config: TaskloopConfig,
    *,
    max_iterations: int | None = None,
    force: bool = False,
    mode: str = "run",
) -> int:
    """Run the orchestration loop under the lock and return the exit code.

    Cleanup (lock release, child termination, run log close) always drains,
    whether the loop finishes, raises, or is interrupted by a signal.
    """
    lock = LockManager(config.lock_path)
    try:
        lock.acquire(mode)
    except LockConflictError as exc:
        if not force:
            logger.error("%s", exc)
            return 1
        logger.warning("Overriding existing lock held by PID %s (--force)", exc.pid)
        lock.force_release()
        lock.acquire(mode)

    scope = CleanupScope()
    children = ChildRegistry()
    run_log = RunLog.open(config.logs_path, pid=os.getpid())
    scope.register(lock.release)
    scope.register(children.terminate_all)
    scope.register(run_log.close)

    orchestrator = build_orchestrator(
        config, supervisor=ProcessSupervisor(children), run_log=run_log, lock=lock
    )
    coordinator = SignalCoordinator(scope, children)
    task = asyncio.current_task()
    if task is not None:
        coordinator.install(task)
    try:
        outcome = await orchestrator.run(max_iterations)
        exit_code = outcome.exit_code
    except asyncio.CancelledError:
        received = coordinator.received
        if received is None:
            raise
        if task is not None:
            task.uncancel()
        exit_code = 128 + int(received)
        run_log.event(f"INTERRUPTED {received.name}")
    finally:
        coordinator.detach()
        await scope.drain()
        coordinator.remove()
    if coordinator.exit_code is not None:
        exit_code = coordinator.exit_code
    return exit_code
