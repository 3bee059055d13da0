"""
GET /runs
GET /runs/{run_id}
Run history for dashboards: newest first, filterable by pipeline and status.
A single run is returned in the same shape as its run.json.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from buildrail.agents.dispatcher import Dispatcher
from buildrail.api.deps import get_dispatcher
from buildrail.services.results_writer import ResultsWriter

router = APIRouter()


@router.get("/runs")
async def list_runs(
    pipeline_id: Optional[str] = None,
    status: Optional[str] = None,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    runs = dispatcher.scheduler.history.list(pipeline_id=pipeline_id, status=status)
    return {
        "runs": [
            {
                "id": run.id,
                "pipeline_id": run.pipeline_id,
                "number": run.number,
                "status": run.status,
                "reported_status": run.reported_status,
                "branch": run.trigger.branch,
                "commit": run.trigger.commit,
                "agent": run.agent_name,
                "duration_seconds": run.duration_seconds,
            }
            for run in runs
        ]
    }


@router.get("/runs/{run_id}")
async def get_run(run_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)):
    run = dispatcher.scheduler.history.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    pipeline = dispatcher.config.pipeline(run.pipeline_id)
    return ResultsWriter.build_summary(run, pipeline.display_name if pipeline else "")
