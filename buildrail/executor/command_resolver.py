"""
Command Resolver
================
Maps a (substituted) Step to the shell command and environment that run it.

Resolver never executes commands; it only returns strings.
Commands are passed to the Step Executor backends for execution.

Runners:
    gradle   → ./gradlew <tasks> <extra_args>   (gradle when no wrapper)
    maven    → ./mvnw <tasks> <extra_args>      (mvn when no wrapper)
    command  → script verbatim
    script   → script verbatim (multi-line, run with `set -e`)

``tool_home`` is exported as JAVA_HOME for the JVM runners.

Deterministic: same step + same workspace → same command, always.
"""
import os
from dataclasses import dataclass, field
from typing import Dict

from buildrail.models.pipeline import Step

_WRAPPERS = {
    "gradle": ("gradlew", "gradle"),
    "maven": ("mvnw", "mvn"),
}


@dataclass(frozen=True)
class ResolvedCommand:
    """
    Immutable container for a resolved step invocation.

    Fields
    ------
    shell_command : str
        Command line handed to ``bash -c``.
    env : dict
        Extra environment variables for the process.
    working_dir : str
        Directory relative to the workspace root ("" = root).
    runner : str
        Runner the command was resolved for.
    """
    shell_command: str
    runner: str
    working_dir: str = ""
    env: Dict[str, str] = field(default_factory=dict)


def _tool_binary(runner: str, workdir: str) -> str:
    wrapper, binary = _WRAPPERS[runner]
    if workdir and os.path.isfile(os.path.join(workdir, wrapper)):
        return f"./{wrapper}"
    return binary


def resolve_command(step: Step, workspace_path: str = "") -> ResolvedCommand:
    """
    Build the invocation for an already-substituted step.

    Parameters
    ----------
    step : Step
        Step whose parameters have been substituted.
    workspace_path : str
        Checkout root; used to detect build-tool wrappers.

    Returns
    -------
    ResolvedCommand
    """
    env = dict(step.env)
    workdir = os.path.join(workspace_path, step.working_dir) if workspace_path else ""

    if step.runner in _WRAPPERS:
        parts = [_tool_binary(step.runner, workdir), step.tasks, step.extra_args]
        command = " ".join(p for p in parts if p)
        if step.tool_home:
            env["JAVA_HOME"] = step.tool_home
    elif step.runner == "script":
        command = f"set -e\n{step.script}"
    else:
        command = step.script

    return ResolvedCommand(
        shell_command=command,
        runner=step.runner,
        working_dir=step.working_dir,
        env=env,
    )
