from __future__ import annotations

import threading

from ciflow.aggregate import aggregate, check_barrier
from ciflow.model import CacheSpec, JobDefinition, Outcome, Pipeline
from ciflow.runner import plan, run_pipeline
from ciflow.scheduler import Scheduler
from ciflow.steps import StepResult
from ciflow.stores import MemoryCacheStore


def outcomes(pipeline):
    return {i.instance_id: i.outcome for i in pipeline.instances}


def run(pipe, runner, **kw):
    kw.setdefault("hashes", {})
    report = run_pipeline(pipe, runner=runner, **kw)
    return report, outcomes(pipe)


class TestConditionsAndOutcomes:
    def test_failure_skips_dependents_but_always_runs(self, job, pipeline, scripted):
        pipe = pipeline(job("A"), job("B", ["A"]), job("C", ["A"], "always()"))
        runner = scripted({"A": False})
        report, out = run(pipe, runner)

        assert out == {"A": Outcome.FAILURE, "B": Outcome.SKIPPED, "C": Outcome.SUCCESS}
        assert "B" not in runner.calls
        assert report.verdict == "failure"
        assert report.exit_code == 1

    def test_skipped_instance_never_ran(self, job, pipeline, scripted):
        pipe = pipeline(job("A"), job("B", ["A"], "failure()"))
        run(pipe, scripted())
        b = pipe.instances[1]
        assert b.outcome is Outcome.SKIPPED
        assert b.started_at is None
        assert b.skip_reason

    def test_dependents_see_terminal_dependencies(self, job, pipeline, scripted):
        pipe = pipeline(job("A", matrix={"n": [1, 2, 3]}), job("B", ["A"]))
        run(pipe, scripted(delay=0.01), max_workers=4)
        a_end = max(i.finished_at for i in pipe.instances if i.job_id == "A")
        b = next(i for i in pipe.instances if i.job_id == "B")
        assert b.started_at >= a_end

    def test_runner_exception_becomes_failure(self, job, pipeline, scripted):
        pipe = pipeline(job("A"), job("B"))
        report, out = run(pipe, scripted({"A": RuntimeError("boom")}))
        assert out == {"A": Outcome.FAILURE, "B": Outcome.SUCCESS}
        assert "boom" in pipe.instances[0].error
        assert report.verdict == "failure"

    def test_step_result_message_recorded(self, job, pipeline, scripted):
        pipe = pipeline(job("A"))
        run(pipe, scripted({"A": StepResult(False, "exit 3")}))
        assert pipe.instances[0].error == "exit 3"

    def test_empty_matrix_job_counts_as_skipped(self, job, pipeline, scripted):
        pipe = pipeline(
            job("E", matrix={"py": []}),
            job("F", ["E"]),
            job("G", ["E"], "always()"),
        )
        report, out = run(pipe, scripted())
        assert out == {"F": Outcome.SKIPPED, "G": Outcome.SUCCESS}
        empty = next(j for j in report.jobs if j.job_id == "E")
        assert empty.outcome == "skipped"
        assert empty.instance_count == 0
        assert report.verdict == "success"

    def test_fully_excluded_matrix_counts_as_skipped(self, job, pipeline, scripted):
        pipe = pipeline(
            job("E", matrix={"os": ["a"]}, exclude=[{"os": "a"}]),
            job("F", ["E"]),
            job("G", ["E"], "always()"),
        )
        report, out = run(pipe, scripted())
        assert out == {"F": Outcome.SKIPPED, "G": Outcome.SUCCESS}
        excluded = next(j for j in report.jobs if j.job_id == "E")
        assert excluded.outcome == "skipped"

    def test_every_instance_terminal_after_run(self, job, pipeline, scripted):
        pipe = pipeline(
            job("A", matrix={"n": [1, 2]}),
            job("B", ["A"]),
            job("C", ["B"], "failure()"),
            job("D", ["C"], "always()"),
        )
        run(pipe, scripted({"A": False}), fail_fast=True)
        check_barrier(pipe.instances)


class TestOrderingAndConcurrency:
    def test_queue_order_rank_then_declaration(self, job, pipeline, scripted):
        pipe = pipeline(
            job("d", ["b", "c"]),
            job("c", ["a"]),
            job("b", ["a"]),
            job("a"),
        )
        runner = scripted()
        run(pipe, runner, max_workers=1)
        assert runner.calls == ["a", "c", "b", "d"]

    def test_matrix_index_breaks_ties(self, job, pipeline, scripted):
        pipe = pipeline(job("t", matrix={"n": [3, 1, 2]}))
        runner = scripted()
        run(pipe, runner, max_workers=1)
        assert runner.calls == ["t (n=3)", "t (n=1)", "t (n=2)"]

    def test_concurrency_bound(self, job, pipeline, scripted):
        pipe = pipeline(*(job(f"j{i}") for i in range(6)))
        runner = scripted(delay=0.05)
        run(pipe, runner, max_workers=2)
        assert len(runner.calls) == 6
        assert runner.max_active <= 2

    def test_jobs_built_without_declaration_order(self, scripted):
        jobs = (JobDefinition("a"), JobDefinition("b"), JobDefinition("c", needs=("a",)))
        pipe = Pipeline(name="p", jobs=jobs)
        runner = scripted()
        report, out = run(pipe, runner, max_workers=1)
        assert runner.calls == ["a", "b", "c"]
        assert set(out.values()) == {Outcome.SUCCESS}
        assert report.verdict == "success"


class TestFailFast:
    def test_doomed_instances_skipped_before_running_ones_finish(self, job, pipeline, scripted):
        released = threading.Event()

        def slow(_context):
            # finishes early only if C gets skipped while this is still running
            return released.wait(timeout=5)

        def on_outcome(inst):
            if inst.job_id == "C" and inst.outcome is Outcome.SKIPPED:
                released.set()

        pipe = pipeline(
            job("A"),
            job("B"),
            job("C", ["A", "B"]),
            job("D", ["A", "B"], "always()"),
        )
        report, out = run(pipe, scripted({"A": False, "B": slow}), max_workers=2, fail_fast=True, on_outcome=on_outcome)

        assert released.is_set()
        assert out == {"A": Outcome.FAILURE, "B": Outcome.SUCCESS, "C": Outcome.SKIPPED, "D": Outcome.SUCCESS}
        c = next(i for i in pipe.instances if i.job_id == "C")
        b = next(i for i in pipe.instances if i.job_id == "B")
        assert c.finished_at <= b.finished_at
        assert "fail-fast" in c.skip_reason

    def test_missing_reference_under_fail_fast_is_warned(self, job, pipeline, scripted):
        released = threading.Event()

        def on_outcome(inst):
            if inst.job_id == "C" and inst.outcome is Outcome.SKIPPED:
                released.set()

        pipe = pipeline(
            job("A"),
            job("B"),
            job("C", ["B"], "success() && env.MISSING == 'x'"),
        )
        runner = scripted({"A": False, "B": lambda _c: released.wait(timeout=5)})
        report, out = run(pipe, runner, max_workers=2, fail_fast=True, on_outcome=on_outcome)

        assert out["C"] is Outcome.SKIPPED
        assert "C" not in runner.calls
        assert any(w.startswith("C: ") and "env.MISSING" in w for w in report.warnings)

    def test_matrix_fail_fast_cancels_siblings(self, job, pipeline, scripted):
        pipe = pipeline(job("t", matrix={"n": [1, 2, 3]}, fail_fast=True))

        def first_fails(context):
            return context.coordinate["n"] != 1

        report, out = run(pipe, scripted({"t": first_fails}), max_workers=1)
        assert out == {"t (n=1)": Outcome.FAILURE, "t (n=2)": Outcome.CANCELLED, "t (n=3)": Outcome.CANCELLED}
        assert report.verdict == "failure"

    def test_matrix_without_fail_fast_runs_all(self, job, pipeline, scripted):
        pipe = pipeline(job("t", matrix={"n": [1, 2, 3]}))
        runner = scripted({"t": lambda c: c.coordinate["n"] != 1})
        run(pipe, runner, max_workers=1)
        assert len(runner.calls) == 3


class TestCancellation:
    def test_cancel_spares_always_and_cancelled_conditions(self, job, pipeline, scripted):
        pipe = pipeline(
            job("A"),
            job("B", ["A"]),
            job("C", ["A"], "always()"),
            job("D", ["A"], "cancelled()"),
        )
        p = plan(pipe)
        holder = {}

        def cancel_run(_context):
            holder["scheduler"].cancel()
            return True

        scheduler = Scheduler(p.dag, p.expansions, pipe.trigger, scripted({"A": cancel_run}), max_workers=1)
        holder["scheduler"] = scheduler
        scheduler.run()

        assert outcomes(pipe) == {
            "A": Outcome.SUCCESS,
            "B": Outcome.CANCELLED,
            "C": Outcome.SUCCESS,
            "D": Outcome.SUCCESS,
        }
        report = aggregate(pipe)
        assert report.verdict == "cancelled"
        assert report.exit_code == 1


class TestCache:
    SPEC = CacheSpec(key="deps-${{ matrix.py }}-v1", restore_keys=("deps-${{ matrix.py }}-",))

    def test_saved_then_restored_exactly(self, job, pipeline, scripted):
        store = MemoryCacheStore()

        def produce(context):
            return StepResult(True, cache_blob=b"wheels")

        first = pipeline(job("t", matrix={"py": ["3.12"]}, cache=self.SPEC))
        run(first, scripted({"t": produce}), store=store)
        inst = first.instances[0]
        assert inst.cache_keys == ["deps-3.12-v1", "deps-3.12-"]
        assert inst.cache_hit is None
        assert store.get("deps-3.12-v1") == b"wheels"

        second = pipeline(job("t", matrix={"py": ["3.12"]}, cache=self.SPEC))
        runner = scripted({"t": produce})
        run(second, runner, store=store)
        assert second.instances[0].cache_hit == "deps-3.12-v1"
        assert runner.contexts[0].restored == b"wheels"
        assert store.keys() == ["deps-3.12-v1"]

    def test_fallback_restore(self, job, pipeline, scripted):
        store = MemoryCacheStore({"deps-3.12-v0": b"old"})
        pipe = pipeline(job("t", matrix={"py": ["3.12"]}, cache=self.SPEC))
        runner = scripted({"t": lambda c: StepResult(True, cache_blob=b"new")})
        run(pipe, runner, store=store)
        assert pipe.instances[0].cache_hit == "deps-3.12-v0"
        assert runner.contexts[0].restored == b"old"
        assert store.get("deps-3.12-v1") == b"new"

    def test_failed_instance_saves_nothing(self, job, pipeline, scripted):
        store = MemoryCacheStore()
        pipe = pipeline(job("t", matrix={"py": ["3.12"]}, cache=self.SPEC))
        run(pipe, scripted({"t": StepResult(False, cache_blob=b"x")}), store=store)
        assert store.keys() == []
