"""
Build Configuration
===================
Immutable result of the configuration loading phase. It is passed
explicitly to the dispatcher and scheduler; nothing registers itself into
module-level state.
"""
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from buildrail.models.agent import AgentSpec
from buildrail.models.pipeline import PipelineDefinition
from buildrail.models.vcs_root import VcsRoot


class BuildConfiguration(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str = "1"
    source: str = "<memory>"
    system_params: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, str] = Field(default_factory=dict)
    vcs_roots: Dict[str, VcsRoot] = Field(default_factory=dict)
    pipelines: Dict[str, PipelineDefinition] = Field(default_factory=dict)
    agents: Tuple[AgentSpec, ...] = ()

    def pipeline(self, pipeline_id: str) -> Optional[PipelineDefinition]:
        return self.pipelines.get(pipeline_id)

    def vcs_root_for(self, pipeline: PipelineDefinition) -> Optional[VcsRoot]:
        if not pipeline.vcs_root:
            return None
        return self.vcs_roots.get(pipeline.vcs_root)
