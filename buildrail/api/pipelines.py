"""
GET /pipelines
POST /pipelines/{pipeline_id}/runs
Lists the loaded pipeline definitions and starts one by hand.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from buildrail.agents.dispatcher import Dispatcher
from buildrail.api.deps import get_dispatcher
from buildrail.core.errors import ConfigurationError
from buildrail.models.run import TriggerContext

router = APIRouter(prefix="/pipelines")


class StartRunRequest(BaseModel):
    branch: str = "refs/heads/main"
    commit: str = ""
    params: Dict[str, str] = Field(default_factory=dict)
    workspace: Optional[str] = None


@router.get("")
async def list_pipelines(dispatcher: Dispatcher = Depends(get_dispatcher)):
    return {
        "pipelines": [
            {
                "id": p.id,
                "name": p.display_name,
                "vcs_root": p.vcs_root,
                "steps": [s.id for s in p.steps],
                "triggers": [
                    {"kind": t.kind, "upstream": t.upstream, "schedule": t.schedule}
                    for t in p.triggers
                ],
                "execution_timeout_min": p.failure_conditions.execution_timeout_min,
                "requirements": p.requirements.describe(),
            }
            for p in dispatcher.config.pipelines.values()
        ]
    }


@router.post("/{pipeline_id}/runs", status_code=202)
async def start_run(
    pipeline_id: str,
    body: StartRunRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    if dispatcher.config.pipeline(pipeline_id) is None:
        raise HTTPException(status_code=404, detail=f"Pipeline '{pipeline_id}' not found")
    context = TriggerContext(
        event="manual",
        branch=body.branch,
        commit=body.commit,
        params=body.params,
        workspace=body.workspace,
    )
    try:
        run = await dispatcher.start(pipeline_id, context)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail={"error": e.message, "problems": e.problems})
    return {"run_id": run.id, "pipeline_id": run.pipeline_id, "number": run.number, "status": run.status}
