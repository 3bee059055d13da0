"""
POST /events/commit
POST /events/schedule
Feeds external events into the Trigger Engine and admits the runs they
qualify for. Responds 202 with the admitted runs; 422 when every matched
pipeline was rejected at pre-flight.
"""
import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from buildrail.agents.dispatcher import Dispatcher, DispatchOutcome
from buildrail.api.deps import get_dispatcher
from buildrail.models.events import CommitEvent, ScheduleEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events")


class AdmittedRun(BaseModel):
    run_id: str
    pipeline_id: str
    number: int
    status: str
    branch: str


class EventResponse(BaseModel):
    runs: List[AdmittedRun]
    rejected: Dict[str, str]


def _respond(outcome: DispatchOutcome) -> EventResponse:
    if outcome.rejected and not outcome.runs:
        raise HTTPException(status_code=422, detail=outcome.rejected)
    return EventResponse(
        runs=[
            AdmittedRun(
                run_id=run.id,
                pipeline_id=run.pipeline_id,
                number=run.number,
                status=run.status,
                branch=run.trigger.branch,
            )
            for run in outcome.runs
        ],
        rejected=outcome.rejected,
    )


@router.post("/commit", status_code=202, response_model=EventResponse)
async def commit_event(event: CommitEvent, dispatcher: Dispatcher = Depends(get_dispatcher)):
    logger.info(f"Commit event: root={event.vcs_root} branch={event.branch} commit={event.commit[:12]}")
    return _respond(await dispatcher.dispatch(event))


@router.post("/schedule", status_code=202, response_model=EventResponse)
async def schedule_event(event: ScheduleEvent, dispatcher: Dispatcher = Depends(get_dispatcher)):
    logger.info(f"Schedule event: {event.schedule} branch={event.branch or '<default>'}")
    return _respond(await dispatcher.dispatch(event))
