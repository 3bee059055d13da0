"""
Dispatcher
==========
Wires the engine together:

    event ──► TriggerEngine ──► RunScheduler.admit ──► run task
                  ▲                                        │
                  └──────── RunCompletedEvent ◄────────────┘

Every finished run is fed back as a RunCompletedEvent so that pipelines
with upstream triggers start after their upstream. A pipeline that fails
pre-flight is rejected on its own; the other pipelines the event matched
still start.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from buildrail.core.config import BUILDRAIL_CONFIG
from buildrail.core.errors import ConfigurationError
from buildrail.models.configuration import BuildConfiguration
from buildrail.models.events import Event, RunCompletedEvent
from buildrail.models.run import Run, TriggerContext
from buildrail.parser.pipeline_loader import load_config
from buildrail.scheduler.run_scheduler import RunScheduler
from buildrail.triggers.engine import TriggerEngine

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    """Runs admitted for one event and pipelines rejected at pre-flight."""
    runs: List[Run] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)   # pipeline id → reason


class Dispatcher:

    def __init__(self, config: BuildConfiguration, scheduler: Optional[RunScheduler] = None) -> None:
        self.config = config
        self.engine = TriggerEngine(config)
        self.scheduler = scheduler or RunScheduler(config)
        self.scheduler.on_complete = self._on_run_complete

    @classmethod
    def from_config_path(cls, path: str = BUILDRAIL_CONFIG, **scheduler_kwargs) -> "Dispatcher":
        config = load_config(path)
        return cls(config, RunScheduler(config, **scheduler_kwargs))

    async def dispatch(self, event: Event) -> DispatchOutcome:
        outcome = DispatchOutcome()
        for request in self.engine.evaluate(event):
            pipeline = self.config.pipeline(request.pipeline_id)
            try:
                run = await self.scheduler.admit(pipeline, request.context)
            except ConfigurationError as e:
                logger.error("Pipeline %s rejected: %s", request.pipeline_id, e.message)
                outcome.rejected[request.pipeline_id] = e.message
                continue
            outcome.runs.append(run)
        return outcome

    async def start(self, pipeline_id: str, context: Optional[TriggerContext] = None) -> Run:
        """Start a pipeline directly, bypassing triggers."""
        pipeline = self.config.pipeline(pipeline_id)
        if pipeline is None:
            raise ConfigurationError(f"Unknown pipeline '{pipeline_id}'")
        return await self.scheduler.admit(pipeline, context or TriggerContext())

    async def _on_run_complete(self, run: Run) -> None:
        event = RunCompletedEvent(
            pipeline_id=run.pipeline_id,
            run_id=run.id,
            status=run.status,
            branch=run.trigger.branch,
            commit=run.trigger.commit,
        )
        outcome = await self.dispatch(event)
        if outcome.runs:
            logger.info("Run %s started downstream: %s",
                        run.id, ", ".join(f"{r.pipeline_id}#{r.number}" for r in outcome.runs))

    async def drain(self) -> None:
        await self.scheduler.drain()
