# actions.py
from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Sequence, Set

from .aggregate import ActionReport
from .conditions import Scope, evaluate, parse_condition
from .model import Outcome, Pipeline, PostAction, TriggerContext
from .steps import StepContext, StepRunner, as_result

logger = logging.getLogger(__name__)


class PostActionRunner:
    """
    Runs side effects that live outside the DAG (auto-fix and push, etc.).

    Each action is gated through the regular condition evaluator with every
    job of the pipeline as its dependency, and runs at most once per
    PostActionRunner, no matter how often run() is called.
    """

    def __init__(
        self,
        runner: StepRunner,
        trigger: TriggerContext,
        *,
        env: Optional[Mapping[str, str]] = None,
        runner_context: Optional[Mapping[str, str]] = None,
        run_cancelled: bool = False,
    ):
        self.runner = runner
        self.trigger = trigger
        self.env = dict(env or {})
        self.runner_context = dict(runner_context or {})
        self.run_cancelled = run_cancelled
        self._done: Set[str] = set()
        self.warnings: List[str] = []

    def outcomes(self, pipeline: Pipeline) -> List[Outcome]:
        outcomes = [i.outcome for i in pipeline.instances]
        seen = {i.job_id for i in pipeline.instances}
        # a job with zero instances counts as skipped
        outcomes.extend(Outcome.SKIPPED for j in pipeline.jobs if j.id not in seen)
        return outcomes

    def run(self, pipeline: Pipeline, actions: Sequence[PostAction] | None = None) -> List[ActionReport]:
        reports: List[ActionReport] = []
        deps = self.outcomes(pipeline)

        for action in pipeline.actions if actions is None else actions:
            if action.id in self._done:
                continue
            self._done.add(action.id)

            scope = Scope(
                trigger=self.trigger,
                env={**self.env, **dict(action.env)},
                runner=self.runner_context,
                run_cancelled=self.run_cancelled,
            )
            result = evaluate(parse_condition(action.condition), deps, scope)
            self.warnings.extend(f"action {action.id}: {w}" for w in result.warnings)
            if not result.eligible:
                reports.append(ActionReport(id=action.id, outcome=Outcome.SKIPPED.value, reason=result.reason))
                continue

            context = StepContext(
                instance_id=f"action:{action.id}",
                job_id=action.id,
                env={**dict(self.trigger.env), **self.env, **dict(action.env)},
            )
            try:
                step_result = as_result(self.runner.run(action.steps, context))
            except Exception as e:
                logger.warning("action %s raised: %s", action.id, e)
                reports.append(ActionReport(id=action.id, outcome=Outcome.FAILURE.value, reason=f"{type(e).__name__}: {e}"))
                continue

            outcome = Outcome.SUCCESS if step_result.success else Outcome.FAILURE
            reports.append(ActionReport(id=action.id, outcome=outcome.value, reason=step_result.message or None))

        return reports
