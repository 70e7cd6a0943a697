# scheduler.py
from __future__ import annotations

import heapq
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .cache import key_context, resolve_keys, runner_info
from .conditions import Scope, can_still_run, evaluate, parse_condition
from .dag import Dag
from .errors import JobExecutionError
from .matrix import Expansion
from .model import JobInstance, Outcome, TriggerContext
from .steps import StepContext, StepResult, StepRunner, as_result
from .stores import CacheHit, CacheStore
from .ui.console import get_console

logger = logging.getLogger(__name__)


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass
class _Dispatch:
    instance: JobInstance
    keys: List[str]


class Scheduler:
    """
    Drives the expanded DAG to completion.

    - an instance becomes a candidate once every instance of every job it
      needs is terminal; its condition is then evaluated exactly once
    - NotEligible -> Skipped straight away (never Running)
    - Eligible instances queue by (topological rank, declaration order,
      matrix index) and are dispatched up to `max_workers` at a time
    - a step runner that raises produces Failure, never a crash
    - fail_fast: once anything fails, pending instances whose condition can
      no longer hold are skipped without waiting for their dependencies
    - running instances are never preempted

    All outcome writes happen on the thread calling run(); workers only run
    steps and talk to the cache store.
    """

    def __init__(
        self,
        dag: Dag,
        expansions: Mapping[str, Expansion],
        trigger: TriggerContext,
        runner: StepRunner,
        *,
        store: Optional[CacheStore] = None,
        max_workers: Optional[int] = None,
        fail_fast: bool = False,
        env: Optional[Mapping[str, str]] = None,
        hashes: Optional[Mapping[str, str]] = None,
        runner_context: Optional[Mapping[str, str]] = None,
        workdir: str | Path = ".",
        on_outcome: Optional[Callable[[JobInstance], None]] = None,
    ):
        self.dag = dag
        self.expansions = dict(expansions)
        self.trigger = trigger
        self.runner = runner
        self.store = store
        self.max_workers = max(1, max_workers or default_workers())
        self.fail_fast = fail_fast
        self.env = dict(env or {})
        self.hashes = dict(hashes or {})
        self.runner_context = dict(runner_context if runner_context is not None else runner_info())
        self.workdir = Path(workdir)
        self.on_outcome = on_outcome

        self.warnings: List[str] = []
        self._cancelled = threading.Event()
        self._failed = False

        # declaration order may be unset (0) on hand-built jobs
        self._position = {name: i for i, name in enumerate(dag.order)}
        self.instances: List[JobInstance] = [
            inst for name in dag.order for inst in self.expansions[name].instances
        ]
        self._pending: List[JobInstance] = sorted(self.instances, key=self._queue_key)
        self._ready: List[Tuple[Tuple[int, int, int, int], JobInstance]] = []

    # -----------------------------------------------------------------
    # public
    # -----------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """
        Cooperative cancellation: instances not yet started become Cancelled
        (always()/cancelled() ones are still evaluated). Running ones finish.
        """
        self._cancelled.set()

    def run(self) -> List[JobInstance]:
        in_flight: Dict[Future, _Dispatch] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while True:
                self._settle()

                # dispatch in queue order up to the bound
                while self._ready and len(in_flight) < self.max_workers:
                    _key, inst = heapq.heappop(self._ready)
                    keys = self._resolve_keys(inst)
                    inst.start()
                    get_console().print_instance_start(inst.instance_id)
                    fut = pool.submit(self._execute, inst, keys)
                    in_flight[fut] = _Dispatch(inst, keys)

                if not in_flight:
                    break

                # wait for one completion, then loop to settle / dispatch again
                try:
                    fut = next(as_completed(list(in_flight.keys())))
                except KeyboardInterrupt:
                    if self.cancelled:
                        raise
                    logger.warning("interrupted: cancelling instances that have not started")
                    self.cancel()
                    continue

                dispatch = in_flight.pop(fut)
                self._commit(dispatch, fut)

        return self.instances

    # -----------------------------------------------------------------
    # readiness
    # -----------------------------------------------------------------

    def _queue_key(self, inst: JobInstance) -> Tuple[int, int, int, int]:
        return (self.dag.rank[inst.job_id], inst.job.order, self._position[inst.job_id], inst.index)

    def dependency_outcomes(self, inst: JobInstance) -> List[Outcome]:
        outcomes: List[Outcome] = []
        for dep in self.dag.needs[inst.job_id]:
            expansion = self.expansions[dep]
            if expansion.empty:
                outcomes.append(Outcome.SKIPPED)
            else:
                outcomes.extend(i.outcome for i in expansion.instances)
        return outcomes

    def _scope(self, inst: JobInstance) -> Scope:
        return Scope(
            trigger=self.trigger,
            coordinate=inst.coordinate,
            env={**self.env, **dict(inst.job.env)},
            runner=self.runner_context,
            run_cancelled=self.cancelled,
        )

    def _settle(self) -> None:
        """Move pending instances to ready / skipped / cancelled until nothing changes."""
        if self.cancelled:
            self._cancel_ready()

        changed = True
        while changed:
            changed = False
            for inst in list(self._pending):
                condition = parse_condition(inst.job.condition)

                if self.cancelled and not condition.runs_after_cancel:
                    self._terminal(inst, lambda i: i.cancel("pipeline cancelled"))
                    changed = True
                    continue

                deps = self.dependency_outcomes(inst)
                if all(o.terminal for o in deps):
                    self._pending.remove(inst)
                    result = evaluate(condition, deps, self._scope(inst))
                    self.warnings.extend(f"{inst.instance_id}: {w}" for w in result.warnings)
                    if result.eligible:
                        heapq.heappush(self._ready, (self._queue_key(inst), inst))
                    else:
                        inst.skip(result.reason)
                        self._notify(inst)
                    changed = True
                elif self.fail_fast and self._failed and not self._can_still_run(inst, condition, deps):
                    self._terminal(inst, lambda i: i.skip("fail-fast: condition can no longer be met"))
                    changed = True

    def _can_still_run(self, inst: JobInstance, condition, deps: List[Outcome]) -> bool:
        warnings: List[str] = []
        ok = can_still_run(condition, deps, self._scope(inst), warnings)
        self.warnings.extend(f"{inst.instance_id}: {w}" for w in warnings)
        return ok

    def _cancel_ready(self) -> None:
        keep = []
        for key, inst in self._ready:
            if parse_condition(inst.job.condition).runs_after_cancel:
                keep.append((key, inst))
            else:
                inst.cancel("pipeline cancelled")
                self._notify(inst)
        heapq.heapify(keep)
        self._ready = keep

    def _cancel_siblings(self, failed: JobInstance) -> None:
        siblings = {id(i) for i in self.expansions[failed.job_id].instances if i is not failed}
        for inst in list(self._pending):
            if id(inst) in siblings:
                self._terminal(inst, lambda i: i.cancel(f"fail-fast: {failed.instance_id} failed"))
        keep = []
        for key, inst in self._ready:
            if id(inst) in siblings:
                inst.cancel(f"fail-fast: {failed.instance_id} failed")
                self._notify(inst)
            else:
                keep.append((key, inst))
        heapq.heapify(keep)
        self._ready = keep

    def _terminal(self, inst: JobInstance, move: Callable[[JobInstance], None]) -> None:
        self._pending.remove(inst)
        move(inst)
        self._notify(inst)

    def _notify(self, inst: JobInstance) -> None:
        logger.debug("%s -> %s", inst.instance_id, inst.outcome.value)
        if self.on_outcome is not None:
            self.on_outcome(inst)

    # -----------------------------------------------------------------
    # execution
    # -----------------------------------------------------------------

    def _resolve_keys(self, inst: JobInstance) -> List[str]:
        if inst.job.cache is None:
            return []
        ctx = key_context(inst, self.trigger, runner=self.runner_context, env=self.env, hashes=self.hashes)
        warnings: List[str] = []
        keys = resolve_keys(inst.job.cache, ctx, warnings)
        self.warnings.extend(f"{inst.instance_id}: {w}" for w in warnings)
        inst.cache_keys = keys
        return keys

    def _execute(self, inst: JobInstance, keys: Sequence[str]) -> Tuple[StepResult, Optional[CacheHit]]:
        """Runs on a worker thread. Must not touch instance outcome fields."""
        hit: Optional[CacheHit] = None
        if keys and self.store is not None:
            hit = self.store.restore(keys)
            get_console().print_cache(inst.instance_id, hit.reason)

        context = StepContext(
            instance_id=inst.instance_id,
            job_id=inst.job_id,
            coordinate=dict(inst.coordinate),
            env={**dict(self.trigger.env), **self.env, **dict(inst.job.env)},
            workdir=self.workdir,
            cache_paths=tuple(inst.job.cache.path) if inst.job.cache else (),
            restored=hit.blob if hit is not None and hit.hit else None,
            expressions=key_context(inst, self.trigger, runner=self.runner_context, env=self.env, hashes=self.hashes),
        )
        result = as_result(self.runner.run(inst.job.steps, context))

        # an exact hit already holds this content under the primary key
        if result.success and keys and self.store is not None and result.cache_blob is not None:
            if hit is None or not hit.exact:
                self.store.put(keys[0], result.cache_blob)
                get_console().print_cache(inst.instance_id, f"saved ({keys[0]})")
        return result, hit

    def _commit(self, dispatch: _Dispatch, fut: Future) -> None:
        inst = dispatch.instance
        try:
            result, hit = fut.result()
        except Exception as e:
            err = JobExecutionError(inst.instance_id, f"{type(e).__name__}: {e}")
            logger.debug("instance raised", exc_info=e)
            inst.finish(False, error=str(err))
        else:
            if hit is not None and hit.hit:
                inst.cache_hit = hit.key
            inst.finish(result.success, error=None if result.success else (result.message or "step sequence failed"))

        self._notify(inst)

        if inst.outcome is Outcome.FAILURE:
            self._failed = True
            if inst.job.fail_fast:
                self._cancel_siblings(inst)
