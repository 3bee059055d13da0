"""
Errors
======
Exception hierarchy shared by the loader, scheduler and executor.

ConfigurationError is the only kind raised to callers of ``admit``; the
others describe why a run ended and are recorded on the Run as problems.
"""
from typing import List, Optional


class BuildrailError(Exception):
    """Base class for every error raised by buildrail."""

    def __init__(self, message: str = "", problems: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.problems: List[str] = problems or []


class ConfigurationError(BuildrailError):
    """Malformed configuration or an unresolvable parameter reference."""


class NoCompatibleAgentError(ConfigurationError):
    """No agent in the pool can ever satisfy a pipeline's requirements."""

    def __init__(self, pipeline_id: str, requirements: str) -> None:
        super().__init__(f"No agent satisfies requirements of '{pipeline_id}': {requirements}")
        self.pipeline_id = pipeline_id
        self.requirements = requirements


class StepFailure(BuildrailError):
    """A step exited non-zero and is not allowed to fail."""

    def __init__(self, step_name: str, exit_code: int) -> None:
        super().__init__(f"Step '{step_name}' failed with exit code {exit_code}")
        self.step_name = step_name
        self.exit_code = exit_code


class RunTimeoutError(BuildrailError):
    """A run exceeded its execution timeout and was terminated."""

    def __init__(self, run_id: str, timeout_min: int) -> None:
        super().__init__(f"Run {run_id} exceeded execution timeout of {timeout_min} min")
        self.run_id = run_id
        self.timeout_min = timeout_min


class FailureConditionBreach(BuildrailError):
    """A metric failure condition was breached after the steps finished."""

    def __init__(self, metric: str, actual: float, description: str) -> None:
        super().__init__(f"Failure condition breached: {description} (actual={actual:g})")
        self.metric = metric
        self.actual = actual
        self.description = description


class RunStateError(BuildrailError):
    """An illegal Run transition (terminal status, backwards cursor)."""


class VcsError(BuildrailError):
    """Checking out a VCS root failed."""

    def __init__(self, url: str, ref: str, detail: str = "") -> None:
        super().__init__(f"Checkout of {url}@{ref} failed: {detail}".rstrip(": "))
        self.url = url
        self.ref = ref
