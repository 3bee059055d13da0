"""
Pipeline Definition Models
==========================
Immutable definitions produced by the configuration loading phase.

    PipelineDefinition
        ├── steps               ordered Step sequence
        ├── triggers            Trigger set (vcs / upstream / schedule)
        ├── failure_conditions  execution timeout + metric conditions
        ├── artifact_rules      ArtifactRule list
        ├── requirements        agent predicate
        └── status_publisher    optional commit-status integration

Nothing here changes while a run is executing; runs hold a reference to the
definition they were admitted with.
"""
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, InstanceOf

from buildrail.conditions.predicates import (
    ADMIT_ALL,
    AllOf,
    Always,
    BranchFilter,
    MetricBreach,
    Predicate,
)
from buildrail.core.constants import TRIGGER_VCS

_FROZEN = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class Step(BaseModel):
    model_config = _FROZEN

    id: str
    name: str
    kind: str = "build"
    runner: str = "command"
    tasks: str = ""
    tool_home: str = ""
    extra_args: str = ""
    script: str = ""
    working_dir: str = ""
    image: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    outputs: Tuple[str, ...] = ()
    condition: InstanceOf[Predicate] = Always()
    allow_failure: bool = False

    def parameterised_fields(self) -> list[str]:
        """Every string the executor substitutes parameters into."""
        fields = [self.tasks, self.tool_home, self.extra_args, self.script, self.working_dir, self.image or ""]
        fields.extend(self.env.values())
        return fields


class Trigger(BaseModel):
    model_config = _FROZEN

    kind: str = TRIGGER_VCS
    branch_filter: InstanceOf[BranchFilter] = ADMIT_ALL
    upstream: Optional[str] = None        # upstream pipeline id
    successful_only: bool = True
    schedule: Optional[str] = None        # schedule name for schedule triggers


class MetricCondition(BaseModel):
    model_config = _FROZEN

    check: InstanceOf[MetricBreach]
    stop_build_on_failure: bool = True

    @property
    def metric(self) -> str:
        return self.check.metric


class FailureConditions(BaseModel):
    model_config = _FROZEN

    execution_timeout_min: int = 0
    metrics: Tuple[MetricCondition, ...] = ()


class ArtifactRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    destination: Optional[str] = "/"   # None = stage only, never publish
    exclude: bool = False

    @property
    def publishes(self) -> bool:
        return self.destination is not None

    def __str__(self) -> str:
        prefix = "-:" if self.exclude else ""
        return f"{prefix}{self.source} => {self.destination or ''}".rstrip()


class StatusPublisherConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "bitbucket_server"     # bitbucket_server | github
    url: str
    username: str = ""
    password: Optional[str] = None     # credential handle
    repository: str = ""               # owner/repo, github only


class DockerRegistryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    registry: str
    username: str = ""
    password: Optional[str] = None


class PipelineDefinition(BaseModel):
    model_config = _FROZEN

    id: str
    name: str = ""
    vcs_root: Optional[str] = None
    steps: Tuple[Step, ...] = ()
    triggers: Tuple[Trigger, ...] = ()
    failure_conditions: FailureConditions = FailureConditions()
    artifact_rules: Tuple[ArtifactRule, ...] = ()
    requirements: InstanceOf[AllOf] = AllOf()
    params: Dict[str, str] = Field(default_factory=dict)
    status_publisher: Optional[StatusPublisherConfig] = None
    docker_registry: Optional[DockerRegistryConfig] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id
