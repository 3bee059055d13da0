"""
VCS Root Model
==============
Identifies a source repository that pipelines check out.

Fields:
    id                   — configuration key pipelines refer to
    url                  — clone URL
    branch               — default ref (e.g. refs/heads/main)
    branch_spec          — BranchFilter of refs the root reports changes for
    use_tags_as_branches — when False, refs/tags/* never count as branches
    auth                 — username + opaque credential handle
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, InstanceOf

from buildrail.conditions.predicates import ADMIT_ALL, BranchFilter


class VcsAuth(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str = ""
    password: Optional[str] = None   # credential handle, never the secret


class VcsRoot(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    url: str
    name: str = ""
    branch: str = "refs/heads/main"
    branch_spec: InstanceOf[BranchFilter] = ADMIT_ALL
    use_tags_as_branches: bool = False
    auth: Optional[VcsAuth] = None

    def reports_branch(self, branch: str) -> bool:
        """True if a change on ``branch`` is visible through this root."""
        if branch.startswith("refs/tags/") and not self.use_tags_as_branches:
            return False
        return self.branch_spec.admits(branch)
