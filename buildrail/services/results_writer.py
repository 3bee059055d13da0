"""
Results Writer
==============
Serializes a finished Run into run.json next to its artifacts.
"""
import json
import logging
import os

from buildrail.models.run import Run

logger = logging.getLogger(__name__)


class ResultsWriter:
    """Writes the run summary consumed by dashboards and later inspection."""

    @staticmethod
    def build_summary(run: Run, pipeline_name: str = "") -> dict:
        return {
            "run": {
                "id": run.id,
                "number": run.number,
                "pipeline": run.pipeline_id,
                "pipeline_name": pipeline_name or run.pipeline_id,
                "agent": run.agent_name,
                "status": run.status,
                "reported_status": run.reported_status,
                "queued_at": run.queued_at.isoformat(),
                "started_at": run.started_at.isoformat() if run.started_at else None,
                "finished_at": run.finished_at.isoformat() if run.finished_at else None,
                "duration_seconds": run.duration_seconds,
            },
            "trigger": run.trigger.model_dump(exclude={"workspace"}),
            "steps": [r.model_dump(exclude={"log_excerpt"}) for r in run.step_results],
            "artifacts": run.artifacts.model_dump(),
            "metrics": run.metrics,
            "problems": run.problems,
        }

    @staticmethod
    def write_results(run: Run, output_path: str, pipeline_name: str = "") -> bool:
        """Write run.json; failures are logged, never raised."""
        try:
            data = ResultsWriter.build_summary(run, pipeline_name)
            os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
            with open(output_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            logger.info("Wrote run summary to %s", os.path.abspath(output_path))
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error("Failed to write %s: %s", output_path, e, exc_info=True)
            return False
