"""
Shared fixtures: a scripted execution backend and a scheduler factory that
keeps every run inside tmp_path. No real subprocesses, Docker or network.
"""
import asyncio

import pytest

from buildrail.executor.backends import BackendResult
from buildrail.executor.step_executor import StepExecutor
from buildrail.scheduler.run_scheduler import RunScheduler


class ScriptedBackend:
    """
    Stands in for LocalProcessBackend / DockerBackend.

    ``outcomes`` maps a shell command to an exit code, to
    ``(exit_code, output_lines)``, or to ``"hang"`` (sleeps until cancelled).
    Unknown commands exit 0 with no output.
    """

    def __init__(self, delay: float = 0.0):
        self.outcomes = {}
        self.calls = []
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def execute(self, command, workspace_path, log_file, base_env=None, **kwargs):
        self.calls.append(command.shell_command)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            outcome = self.outcomes.get(command.shell_command, 0)
            if outcome == "hang":
                await asyncio.sleep(30)
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(outcome, tuple):
                exit_code, lines = outcome
            else:
                exit_code, lines = outcome, []
            for line in lines:
                log_file.write(line + "\n")
            return BackendResult(exit_code=exit_code, output_lines=list(lines))
        finally:
            self.active -= 1


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def make_scheduler(tmp_path, backend):
    def _make(config, **kwargs):
        executor = StepExecutor(
            log_root=str(tmp_path / "logs"),
            local_backend=backend,
            docker_backend=backend,
        )
        kwargs.setdefault("environ", {})
        return RunScheduler(
            config,
            executor=executor,
            workspace_root=str(tmp_path / "workspace"),
            artifact_root=str(tmp_path / "store"),
            **kwargs,
        )
    return _make
