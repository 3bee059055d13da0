"""
Failure Conditions
==================
Computes run metrics and checks them against a pipeline's metric failure
conditions once the steps are done.

Metrics:
    artifact_size      — bytes of published artifacts
    artifact_count     — number of published artifacts
    build_duration     — seconds since the run started
    failed_step_count  — steps that failed but were allowed to fail
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from buildrail.core.constants import (
    METRIC_ARTIFACT_COUNT,
    METRIC_ARTIFACT_SIZE,
    METRIC_BUILD_DURATION,
    METRIC_FAILED_STEP_COUNT,
)
from buildrail.core.errors import FailureConditionBreach
from buildrail.models.pipeline import MetricCondition, PipelineDefinition
from buildrail.models.run import Run

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConditionOutcome:
    condition: MetricCondition
    actual: float
    breached: bool

    def as_breach(self) -> FailureConditionBreach:
        return FailureConditionBreach(self.condition.metric, self.actual, self.condition.check.describe())


def collect_metrics(run: Run) -> Dict[str, float]:
    return {
        METRIC_ARTIFACT_SIZE: float(run.artifacts.total_size),
        METRIC_ARTIFACT_COUNT: float(len(run.artifacts.published)),
        METRIC_BUILD_DURATION: run.duration_seconds,
        METRIC_FAILED_STEP_COUNT: float(
            sum(1 for r in run.step_results if not r.succeeded)
        ),
    }


def evaluate_conditions(
    pipeline: PipelineDefinition,
    metrics: Dict[str, float],
    baseline: Optional[Dict[str, float]] = None,
) -> List[ConditionOutcome]:
    """Evaluate every metric condition of ``pipeline``."""
    context: Dict[str, float] = {f"metric.{k}": v for k, v in metrics.items()}
    if baseline:
        context.update({f"baseline.{k}": v for k, v in baseline.items()})

    outcomes = []
    for condition in pipeline.failure_conditions.metrics:
        if condition.check.compare_to == "last_successful" and not baseline:
            logger.info("No successful run of %s yet; '%s' not evaluated",
                        pipeline.id, condition.check.describe())
        breached = condition.check.evaluate(context)
        outcomes.append(ConditionOutcome(condition, metrics.get(condition.metric, 0.0), breached))
        if breached:
            logger.warning("Failure condition breached for %s: %s (actual=%g)",
                           pipeline.id, condition.check.describe(), metrics.get(condition.metric, 0.0))
    return outcomes
