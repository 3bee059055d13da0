"""
Trigger Engine
==============
Decides which pipelines an incoming event should start.

    CommitEvent        → vcs triggers of pipelines on that VCS root
    RunCompletedEvent  → upstream triggers naming the finished pipeline
    ScheduleEvent      → schedule triggers with that schedule name

Every candidate trigger tests the event's branch against its ordered
``+:``/``-:`` branch filter (last matching rule wins, no match excludes).
VCS triggers additionally require the VCS root to report the branch.
Upstream triggers with ``successful_only`` ignore runs that did not succeed.

The engine holds only the immutable configuration; evaluating one event
never depends on earlier events.
"""
import logging
from typing import Dict, List

from buildrail.core.constants import RUN_SUCCEEDED, TRIGGER_SCHEDULE, TRIGGER_UPSTREAM, TRIGGER_VCS
from buildrail.models.configuration import BuildConfiguration
from buildrail.models.events import CommitEvent, Event, RunCompletedEvent, ScheduleEvent, StartRequest
from buildrail.models.pipeline import PipelineDefinition, Trigger
from buildrail.models.run import TriggerContext

logger = logging.getLogger(__name__)


class TriggerEngine:

    def __init__(self, config: BuildConfiguration) -> None:
        self.config = config

    # ------------------------------------------------------------------
    # Per-kind checks
    # ------------------------------------------------------------------
    def _vcs_trigger_fires(self, pipeline: PipelineDefinition, trigger: Trigger, event: CommitEvent) -> bool:
        if pipeline.vcs_root != event.vcs_root:
            return False
        root = self.config.vcs_roots.get(event.vcs_root)
        if root is None or not root.reports_branch(event.branch):
            return False
        return trigger.branch_filter.admits(event.branch)

    def _upstream_trigger_fires(self, trigger: Trigger, event: RunCompletedEvent) -> bool:
        if trigger.upstream != event.pipeline_id:
            return False
        if trigger.successful_only and event.status != RUN_SUCCEEDED:
            logger.info("Upstream %s finished '%s'; successful_only trigger not fired",
                        event.pipeline_id, event.status)
            return False
        return trigger.branch_filter.admits(event.branch)

    def _schedule_branch(self, pipeline: PipelineDefinition, event: ScheduleEvent) -> str:
        if event.branch:
            return event.branch
        root = self.config.vcs_root_for(pipeline)
        return root.branch if root else "refs/heads/main"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def evaluate(self, event: Event) -> List[StartRequest]:
        """
        Return one StartRequest per pipeline the event qualifies for.

        Several matching triggers on one pipeline still start one run.
        """
        requests: Dict[str, StartRequest] = {}

        for pipeline in self.config.pipelines.values():
            for trigger in pipeline.triggers:
                context = None

                if isinstance(event, CommitEvent) and trigger.kind == TRIGGER_VCS:
                    if self._vcs_trigger_fires(pipeline, trigger, event):
                        context = TriggerContext(event=TRIGGER_VCS, branch=event.branch, commit=event.commit)

                elif isinstance(event, RunCompletedEvent) and trigger.kind == TRIGGER_UPSTREAM:
                    if self._upstream_trigger_fires(trigger, event):
                        context = TriggerContext(
                            event=TRIGGER_UPSTREAM,
                            branch=event.branch,
                            commit=event.commit,
                            upstream_run_id=event.run_id,
                        )

                elif isinstance(event, ScheduleEvent) and trigger.kind == TRIGGER_SCHEDULE:
                    branch = self._schedule_branch(pipeline, event)
                    if trigger.schedule == event.schedule and trigger.branch_filter.admits(branch):
                        context = TriggerContext(event=TRIGGER_SCHEDULE, branch=branch)

                if context is not None and pipeline.id not in requests:
                    requests[pipeline.id] = StartRequest(pipeline_id=pipeline.id, context=context)

        logger.info("Event %s %s matched %d pipeline(s): %s",
                    type(event).__name__, getattr(event, "branch", ""), len(requests),
                    ", ".join(requests) or "-")
        return list(requests.values())
