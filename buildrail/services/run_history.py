"""
Run History
===========
In-memory registry of runs for one server process.

Stores:
    run_id → Run
    pipeline_id → last allocated run number

Used by:
    - Scheduler to number runs and to find the last successful run
      (baseline for relative failure conditions)
    - API to list and show runs

No persistence: finished runs are also written to the artifact store as
run.json by the ResultsWriter.
"""
import logging
import threading
from typing import Dict, List, Optional

from buildrail.core.constants import RUN_SUCCEEDED
from buildrail.models.run import Run

logger = logging.getLogger(__name__)


class RunHistory:

    def __init__(self, max_runs: int = 1000) -> None:
        self._runs: Dict[str, Run] = {}
        self._numbers: Dict[str, int] = {}
        self._max_runs = max_runs
        self._lock = threading.Lock()

    def next_number(self, pipeline_id: str) -> int:
        """Allocate the next run number for a pipeline (1-based)."""
        with self._lock:
            number = self._numbers.get(pipeline_id, 0) + 1
            self._numbers[pipeline_id] = number
            return number

    def add(self, run: Run) -> None:
        with self._lock:
            self._runs[run.id] = run
            if len(self._runs) > self._max_runs:
                # Evict the oldest finished run; active runs are never dropped
                for run_id, old in self._runs.items():
                    if old.is_terminal:
                        del self._runs[run_id]
                        logger.debug("Evicted run %s from history", run_id)
                        break

    def get(self, run_id: str) -> Optional[Run]:
        return self._runs.get(run_id)

    def list(self, pipeline_id: Optional[str] = None, status: Optional[str] = None) -> List[Run]:
        """Runs newest first, optionally filtered."""
        with self._lock:
            runs = list(reversed(self._runs.values()))
        if pipeline_id:
            runs = [r for r in runs if r.pipeline_id == pipeline_id]
        if status:
            runs = [r for r in runs if r.status == status]
        return runs

    def last_successful(self, pipeline_id: str, exclude_run_id: Optional[str] = None) -> Optional[Run]:
        for run in self.list(pipeline_id=pipeline_id, status=RUN_SUCCEEDED):
            if run.id != exclude_run_id:
                return run
        return None

    def __len__(self) -> int:
        return len(self._runs)
