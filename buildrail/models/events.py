"""
Event Models
============
Inputs to the Trigger Engine and its output.

    CommitEvent        — a push was observed on a VCS root
    RunCompletedEvent  — a run reached a terminal status (feeds upstream triggers)
    ScheduleEvent      — an external clock fired a named schedule
    StartRequest       — "admit a run of this pipeline with this context"
"""
from typing import Optional, Union

from pydantic import BaseModel

from buildrail.models.run import TriggerContext


class CommitEvent(BaseModel):
    vcs_root: str
    branch: str
    commit: str = ""


class RunCompletedEvent(BaseModel):
    pipeline_id: str
    run_id: str
    status: str
    branch: str
    commit: str = ""


class ScheduleEvent(BaseModel):
    schedule: str
    branch: Optional[str] = None     # defaults to the pipeline's VCS root branch


Event = Union[CommitEvent, RunCompletedEvent, ScheduleEvent]


class StartRequest(BaseModel):
    pipeline_id: str
    context: TriggerContext
