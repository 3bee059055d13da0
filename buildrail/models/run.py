"""
Run Model
=========
Pydantic models for one execution of a PipelineDefinition.

Run lifecycle:
    pending ──► running ──► succeeded
                   │  └───► failed
                   └──────► timed_out

Invariants (enforced by the transition methods, not by callers):
    - the step cursor only moves forward
    - a terminal status never changes again
"""
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from buildrail.core.constants import (
    RUN_PENDING,
    RUN_RUNNING,
    RUN_SUCCEEDED,
    RUN_TIMED_OUT,
    STATUS_FAILURE,
    STATUS_PENDING,
    STATUS_SUCCESS,
    TERMINAL_STATUSES,
)
from buildrail.core.errors import RunStateError


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TriggerContext(BaseModel):
    """Why a run was started and which revision it builds."""
    event: str = "manual"                 # vcs | upstream | schedule | manual
    branch: str = "refs/heads/main"
    commit: str = ""
    upstream_run_id: Optional[str] = None
    workspace: Optional[str] = None       # pre-populated working tree, skips checkout
    params: Dict[str, str] = Field(default_factory=dict)


class StepResult(BaseModel):
    step_id: str
    step_name: str = ""
    exit_code: int = -1
    duration_ms: int = 0
    output_ref: str = ""                  # path of the full step log
    log_excerpt: str = ""
    skipped: bool = False
    allowed_failure: bool = False
    outputs: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.skipped or (self.exit_code == 0 and self.error is None)


class ArtifactManifest(BaseModel):
    """Files written to the artifact store for one run."""
    store_path: str = ""
    published: List[str] = Field(default_factory=list)    # relative to store_path
    staged: List[str] = Field(default_factory=list)       # relative to store_path/.staged
    total_size: int = 0                                   # bytes, published only


class Run(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    number: int = 0
    pipeline_id: str
    trigger: TriggerContext = Field(default_factory=TriggerContext)
    status: str = RUN_PENDING
    step_cursor: int = 0
    step_results: List[StepResult] = Field(default_factory=list)
    artifacts: ArtifactManifest = Field(default_factory=ArtifactManifest)
    metrics: Dict[str, float] = Field(default_factory=dict)
    problems: List[str] = Field(default_factory=list)
    agent_name: Optional[str] = None
    queued_at: datetime = Field(default_factory=_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def reported_status(self) -> str:
        """Status as exposed to code hosts: timed-out reports as failure."""
        if self.status == RUN_SUCCEEDED:
            return STATUS_SUCCESS
        if self.is_terminal:
            return STATUS_FAILURE
        return STATUS_PENDING

    @property
    def duration_seconds(self) -> float:
        if not self.started_at:
            return 0.0
        end = self.finished_at or _now()
        return round((end - self.started_at).total_seconds(), 3)

    def start(self, agent_name: Optional[str] = None) -> None:
        if self.status != RUN_PENDING:
            raise RunStateError(f"Run {self.id} cannot start from '{self.status}'")
        self.status = RUN_RUNNING
        self.agent_name = agent_name
        self.started_at = _now()

    def advance(self, to: int) -> None:
        """Move the step cursor forward to ``to``."""
        if self.is_terminal:
            raise RunStateError(f"Run {self.id} is {self.status}; cursor is frozen")
        if to < self.step_cursor:
            raise RunStateError(f"Run {self.id} cursor cannot move back from {self.step_cursor} to {to}")
        self.step_cursor = to

    def record_step(self, result: StepResult) -> None:
        if self.is_terminal:
            raise RunStateError(f"Run {self.id} is {self.status}; cannot record step {result.step_id}")
        self.step_results.append(result)

    def finish(self, status: str, problem: Optional[str] = None) -> None:
        """Move to a terminal status exactly once."""
        if self.is_terminal:
            raise RunStateError(f"Run {self.id} already finished as '{self.status}'")
        if status not in TERMINAL_STATUSES:
            raise RunStateError(f"'{status}' is not a terminal status")
        if problem:
            self.problems.append(problem)
        self.status = status
        self.finished_at = _now()
        if self.started_at is None:
            self.started_at = self.finished_at

    @property
    def timed_out(self) -> bool:
        return self.status == RUN_TIMED_OUT
