"""
Unit Tests — Run Model and Run History
======================================
Run transitions (forward-only cursor, exactly-once terminal status),
reported status mapping and the in-memory run history.
"""
import pytest

from buildrail.core.errors import RunStateError
from buildrail.models.run import Run, StepResult
from buildrail.services.run_history import RunHistory


class TestRunTransitions:

    def test_lifecycle(self):
        run = Run(pipeline_id="build")
        assert run.status == "pending"
        assert run.reported_status == "pending"

        run.start("agent-1")
        assert run.status == "running"
        assert run.agent_name == "agent-1"

        run.advance(1)
        run.advance(1)
        run.finish("succeeded")
        assert run.is_terminal
        assert run.reported_status == "success"
        assert run.finished_at >= run.started_at

    def test_cursor_never_moves_back(self):
        run = Run(pipeline_id="build")
        run.start()
        run.advance(2)
        with pytest.raises(RunStateError):
            run.advance(1)

    def test_terminal_is_final(self):
        run = Run(pipeline_id="build")
        run.start()
        run.finish("timed_out", "too slow")
        assert run.timed_out
        assert run.reported_status == "failure"
        assert run.problems == ["too slow"]

        with pytest.raises(RunStateError):
            run.finish("failed")
        with pytest.raises(RunStateError):
            run.advance(5)
        with pytest.raises(RunStateError):
            run.record_step(StepResult(step_id="late"))
        assert run.status == "timed_out"

    def test_finish_requires_terminal_status(self):
        run = Run(pipeline_id="build")
        with pytest.raises(RunStateError):
            run.finish("running")

    def test_start_only_from_pending(self):
        run = Run(pipeline_id="build")
        run.start()
        with pytest.raises(RunStateError):
            run.start()

    def test_step_result_success(self):
        assert StepResult(step_id="a", exit_code=0).succeeded
        assert StepResult(step_id="a", skipped=True).succeeded
        assert not StepResult(step_id="a", exit_code=2).succeeded
        assert not StepResult(step_id="a", exit_code=0, error="output missing").succeeded


class TestRunHistory:

    def test_numbers_are_per_pipeline(self):
        history = RunHistory()
        assert [history.next_number("a"), history.next_number("a"), history.next_number("b")] == [1, 2, 1]

    def test_list_newest_first_and_filters(self):
        history = RunHistory()
        first = Run(pipeline_id="a", number=1)
        second = Run(pipeline_id="a", number=2)
        other = Run(pipeline_id="b", number=1)
        for run in (first, second, other):
            history.add(run)
        second.start()
        second.finish("failed")

        assert [r.number for r in history.list(pipeline_id="a")] == [2, 1]
        assert history.list(status="failed") == [second]
        assert history.get(other.id) is other
        assert len(history) == 3

    def test_last_successful(self):
        history = RunHistory()
        ok = Run(pipeline_id="a", number=1)
        ok.start()
        ok.finish("succeeded")
        current = Run(pipeline_id="a", number=2)
        current.start()
        current.finish("succeeded")
        history.add(ok)
        history.add(current)

        assert history.last_successful("a", exclude_run_id=current.id) is ok
        assert history.last_successful("b") is None

    def test_eviction_keeps_active_runs(self):
        history = RunHistory(max_runs=2)
        active = Run(pipeline_id="a")
        done = Run(pipeline_id="a")
        done.start()
        done.finish("succeeded")
        history.add(active)
        history.add(done)
        history.add(Run(pipeline_id="a"))

        assert history.get(active.id) is active
        assert history.get(done.id) is None
