"""
Agent Model
Pydantic model for an execution agent: a named slot with attributes that
pipeline requirements are evaluated against.
"""
from typing import Dict, Optional

from pydantic import BaseModel, Field


class AgentSpec(BaseModel):
    name: str
    attributes: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)
    workspace_root: Optional[str] = None

    def requirement_context(self) -> Dict[str, str]:
        context = dict(self.attributes)
        context.update({f"env.{k}": v for k, v in self.env.items()})
        context["agent.name"] = self.name
        return context
