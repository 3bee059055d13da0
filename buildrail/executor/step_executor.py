"""
Step Executor
=============
Runs one Step of a Run and returns a structured StepResult.

Lifecycle of ``StepExecutor.run``:
    1. Evaluate the step's run-condition against the run parameters;
       false → skipped (counts as success), no tool is invoked
    2. Substitute %parameter% references into the step
    3. Resolve the runner into a shell command
    4. Execute on the local or Docker backend, streaming to the step log
    5. Collect ##buildrail[setParameter ...] exports as step outputs
    6. Build StepResult (exit code, duration, log path, excerpt)

BOUNDARY RULES:
    - Executor ONLY runs and observes one step.
    - Executor NEVER decides the run's fate; the scheduler does.
    - Executor NEVER raises for step problems; it returns a failed result.
      Only cancellation (run timeout) propagates.
"""
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from buildrail.core.config import LOG_EXCERPT_LINES, LOG_ROOT
from buildrail.core.errors import ConfigurationError
from buildrail.executor.backends import DockerBackend, LocalProcessBackend
from buildrail.executor.command_resolver import resolve_command
from buildrail.models.pipeline import DockerRegistryConfig, Step
from buildrail.models.run import StepResult
from buildrail.parser.params import ParameterContext

logger = logging.getLogger(__name__)

_SET_PARAMETER_RE = re.compile(r"##buildrail\[setParameter name='([^']+)' value='([^']*)'\]")


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
def create_log_excerpt(full_log: str,
                       head: int = LOG_EXCERPT_LINES,
                       tail: int = LOG_EXCERPT_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.

    If the log is short enough, returns it as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


def extract_outputs(lines: List[str]) -> Dict[str, str]:
    """Collect parameters exported through setParameter service messages."""
    outputs: Dict[str, str] = {}
    for line in lines:
        for name, value in _SET_PARAMETER_RE.findall(line):
            outputs[name] = value
    return outputs


def substitute_step(step: Step, params: ParameterContext) -> Step:
    """Return a copy of ``step`` with every parameter reference resolved."""
    return step.model_copy(update={
        "tasks": params.substitute(step.tasks),
        "tool_home": params.substitute(step.tool_home),
        "extra_args": params.substitute(step.extra_args),
        "script": params.substitute(step.script),
        "working_dir": params.substitute(step.working_dir),
        "image": params.substitute(step.image) if step.image else None,
        "env": {k: params.substitute(v) for k, v in step.env.items()},
    })


@dataclass
class StepContext:
    """Everything a step needs from its run."""
    run_id: str
    step_index: int
    workspace_path: str
    params: ParameterContext
    log_dir: str = ""
    agent_env: Dict[str, str] = field(default_factory=dict)
    docker_registry: Optional[DockerRegistryConfig] = None


class StepExecutor:
    """Executes steps; one instance is shared by every run of a scheduler."""

    def __init__(
        self,
        log_root: str = LOG_ROOT,
        local_backend: Optional[LocalProcessBackend] = None,
        docker_backend: Optional[DockerBackend] = None,
    ) -> None:
        self.log_root = log_root
        self.local_backend = local_backend or LocalProcessBackend()
        self.docker_backend = docker_backend or DockerBackend()

    def _log_path(self, step: Step, context: StepContext) -> str:
        log_dir = context.log_dir or os.path.join(self.log_root, context.run_id)
        os.makedirs(log_dir, exist_ok=True)
        return os.path.join(log_dir, f"{context.step_index + 1:02d}-{step.id}.log")

    async def run(self, step: Step, context: StepContext) -> StepResult:
        result = StepResult(step_id=step.id, step_name=step.name, allowed_failure=step.allow_failure)
        start = time.monotonic()

        # 1. Run-condition
        if not step.condition.evaluate(context.params.as_predicate_context()):
            logger.info("Step skipped | run=%s | step=%s | condition: %s",
                        context.run_id, step.id, step.condition.describe())
            result.skipped = True
            result.exit_code = 0
            return result

        # 2–3. Substitute and resolve
        try:
            resolved_step = substitute_step(step, context.params)
        except ConfigurationError as e:
            result.error = e.message
            logger.error("Step %s not started: %s", step.id, e.message)
            return result
        command = resolve_command(resolved_step, context.workspace_path)

        # 4. Execute
        result.output_ref = self._log_path(step, context)
        logger.info("Step started | run=%s | step=%s | runner=%s | image=%s",
                    context.run_id, step.id, step.runner, resolved_step.image or "-")

        with open(result.output_ref, "w", encoding="utf-8") as log_file:
            log_file.write(f">>> STEP: {step.name}\n>>> COMMAND: {command.shell_command}\n")
            if resolved_step.image:
                backend_result = await self.docker_backend.execute(
                    command,
                    context.workspace_path,
                    log_file,
                    image=resolved_step.image,
                    base_env=context.agent_env,
                    registry=context.docker_registry,
                )
            else:
                backend_result = await self.local_backend.execute(
                    command,
                    context.workspace_path,
                    log_file,
                    base_env=context.agent_env,
                )
            log_file.write(f">>> EXIT: {backend_result.exit_code}\n")

        # 5–6. Outputs and result
        result.exit_code = backend_result.exit_code
        result.error = backend_result.error
        result.outputs = extract_outputs(backend_result.output_lines)
        result.log_excerpt = create_log_excerpt("\n".join(backend_result.output_lines))
        result.duration_ms = int((time.monotonic() - start) * 1000)

        missing = [name for name in step.outputs if name not in result.outputs]
        if missing and result.error is None and result.exit_code == 0:
            result.error = "Declared output(s) not produced: " + ", ".join(missing)

        logger.info(
            "Step complete | run=%s | step=%s | exit=%d | time=%dms%s",
            context.run_id, step.id, result.exit_code, result.duration_ms,
            f" | error={result.error}" if result.error else "",
        )
        return result
