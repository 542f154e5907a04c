from __future__ import annotations

import logging
import shlex
from collections.abc import Mapping
from pathlib import Path

from taskloop.backends.base import BackendProcessError, WorkerBackend, WorkerNotFoundError
from taskloop.config import TaskloopConfig
from taskloop.process import NOT_FOUND_EXIT_CODE, ProcessResult, ProcessSupervisor

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "Execute agent instructions"

PERMISSION_FLAGS: dict[str, str | None] = {
    "allow-all": "--allow-all",
    "yolo": "--yolo",
    "strict": None,
    "none": None,
}


class CLIWorkerBackend(WorkerBackend):
    name = "cli"

    def __init__(
        self,
        binary: str,
        *,
        models: Mapping[str, str],
        agent_prefix: str = "taskloop-",
        permissions: str = "allow-all",
        extra_flags: list[str] | None = None,
        working_directory: Path | None = None,
        inherit_stdio: bool = True,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self.binary = binary
        self.models = dict(models)
        self.agent_prefix = agent_prefix
        self.permissions = permissions
        self.extra_flags = list(extra_flags or [])
        self.working_directory = working_directory
        self.inherit_stdio = inherit_stdio
        self.supervisor = supervisor or ProcessSupervisor()

    @classmethod
    def from_config(
        cls, config: TaskloopConfig, supervisor: ProcessSupervisor | None = None
    ) -> CLIWorkerBackend:
        return cls(
            config.worker.binary,
            models=config.worker.models,
            agent_prefix=config.worker.agent_prefix,
            permissions=config.worker.permissions,
            extra_flags=config.worker.extra_flags,
            working_directory=config.project_root,
            inherit_stdio=config.worker.inherit_stdio,
            supervisor=supervisor,
        )

    def agent_name(self, phase: str) -> str:
        return f"{self.agent_prefix}{phase}"

    def build_command(self, phase: str, prompt: str | None = None) -> list[str]:
        try:
            model = self.models[phase]
        except KeyError:
            raise ValueError(f"No model configured for phase '{phase}'") from None
        command = [self.binary, "-p", prompt or DEFAULT_PROMPT, f"--agent={self.agent_name(phase)}"]
        permission_flag = PERMISSION_FLAGS.get(self.permissions)
        if permission_flag:
            command.append(permission_flag)
        command.extend(["--model", model, "--no-ask-user"])
        command.extend(self.extra_flags)
        return command

    async def execute(self, phase: str, prompt: str | None = None) -> ProcessResult:
        command = self.build_command(phase, prompt)
        logger.debug("Spawning worker: %s", shlex.join(command))
        try:
            return await self.supervisor.run_exec(
                command,
                cwd=self.working_directory,
                capture=not self.inherit_stdio,
            )
        except FileNotFoundError as exc:
            raise WorkerNotFoundError(
                f"Worker binary not found: {self.binary}. Is it installed and in PATH?",
                backend=self.name,
                exit_code=NOT_FOUND_EXIT_CODE,
                retriable=False,
            ) from exc
        except OSError as exc:
            raise BackendProcessError(
                f"Failed to start worker {self.binary}: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc
