from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import pytest

from ciflow.model import CacheSpec, JobDefinition, MatrixSpec, Pipeline, TriggerContext
from ciflow.steps import StepContext, StepResult, StepRunner
from ciflow.ui.console import Console, set_console

Behaviour = Union[bool, StepResult, BaseException, Callable[[StepContext], Any]]


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield
    set_console(Console())


def make_job(
    job_id: str,
    needs: Sequence[str] = (),
    condition: str = "success()",
    *,
    matrix: Optional[Mapping[str, Sequence[Any]]] = None,
    exclude: Sequence[Mapping[str, Any]] = (),
    include: Sequence[Mapping[str, Any]] = (),
    cache: Optional[CacheSpec] = None,
    critical: bool = True,
    fail_fast: bool = False,
    order: int = 0,
    steps: Sequence[Any] = (),
) -> JobDefinition:
    spec = MatrixSpec(
        axes=tuple((k, tuple(v)) for k, v in (matrix or {}).items()),
        exclude=tuple(exclude),
        include=tuple(include),
    )
    return JobDefinition(
        id=job_id,
        needs=tuple(needs),
        condition=condition,
        matrix=spec,
        cache=cache,
        critical=critical,
        fail_fast=fail_fast,
        order=order,
        steps=tuple(steps),
    )


def make_pipeline(*jobs: JobDefinition, trigger: Optional[TriggerContext] = None, **kw) -> Pipeline:
    # declaration order follows argument order
    ordered = tuple(replace(j, order=i) for i, j in enumerate(jobs))
    return Pipeline(name=kw.pop("name", "test"), jobs=ordered, trigger=trigger or TriggerContext(), **kw)


class ScriptedRunner(StepRunner):
    """
    Step runner whose result per job id is scripted:
      bool / StepResult -> returned
      exception         -> raised
      callable          -> called with the context, its return value used
    Unscripted jobs succeed.
    """

    def __init__(self, script: Optional[Dict[str, Behaviour]] = None, delay: float = 0.0):
        self.script = dict(script or {})
        self.delay = delay
        self.calls: List[str] = []
        self.contexts: List[StepContext] = []
        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0

    def run(self, steps, context: StepContext):
        with self._lock:
            self.calls.append(context.instance_id)
            self.contexts.append(context)
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.delay:
                time.sleep(self.delay)
            behaviour = self.script.get(context.job_id, True)
            if isinstance(behaviour, BaseException):
                raise behaviour
            if callable(behaviour):
                return behaviour(context)
            return behaviour
        finally:
            with self._lock:
                self._active -= 1


@pytest.fixture
def job():
    return make_job


@pytest.fixture
def pipeline():
    return make_pipeline


@pytest.fixture
def scripted():
    return ScriptedRunner
