# aggregate.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from .errors import AggregationError, DefinitionError
from .model import JobDefinition, JobInstance, Outcome, Pipeline

Verdict = Literal["success", "failure", "cancelled"]


# -------------------- Schemas --------------------

class InstanceReport(BaseModel):
    instance_id: str
    job_id: str
    name: str
    coordinate: Dict[str, Any] = Field(default_factory=dict)
    outcome: str
    critical: bool
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration: Optional[float] = None
    cache_keys: List[str] = Field(default_factory=list)
    cache_hit: Optional[str] = None
    error: Optional[str] = None
    skip_reason: Optional[str] = None


class JobReport(BaseModel):
    job_id: str
    name: str
    outcome: str
    critical: bool
    instance_count: int


class ActionReport(BaseModel):
    id: str
    outcome: str
    reason: Optional[str] = None


class ExecutionReport(BaseModel):
    pipeline: str
    trigger: Dict[str, Any] = Field(default_factory=dict)
    verdict: Verdict
    exit_code: int
    critical: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    instances: List[InstanceReport] = Field(default_factory=list)
    jobs: List[JobReport] = Field(default_factory=list)
    actions: List[ActionReport] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    def failed_jobs(self) -> List[JobReport]:
        return [j for j in self.jobs if j.outcome != Outcome.SUCCESS.value]

    def summary_lines(self) -> List[str]:
        """Human-readable verdict naming every job that did not succeed."""
        lines = [f"Pipeline '{self.pipeline}': {self.verdict.upper()}"]
        for job in self.failed_jobs():
            marker = " [critical]" if job.critical else ""
            lines.append(f"  {job.job_id}: {job.outcome}{marker}")
        return lines

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)


# -------------------- Aggregation --------------------

def job_outcome(instances: Sequence[JobInstance]) -> Outcome:
    """Roll the outcomes of one job's instances into a single job outcome."""
    outcomes = {i.outcome for i in instances}
    if not outcomes:
        return Outcome.SKIPPED
    if Outcome.FAILURE in outcomes:
        return Outcome.FAILURE
    if Outcome.CANCELLED in outcomes:
        return Outcome.CANCELLED
    if outcomes == {Outcome.SKIPPED}:
        return Outcome.SKIPPED
    return Outcome.SUCCESS


def critical_jobs(jobs: Sequence[JobDefinition], critical: Optional[Iterable[str]] = None) -> List[str]:
    """
    A caller-supplied set wins; otherwise every job declared critical
    (the default) counts.
    """
    known = [j.id for j in jobs]
    if critical is None:
        return [j.id for j in jobs if j.critical]
    chosen = list(dict.fromkeys(critical))
    unknown = sorted(set(chosen) - set(known))
    if unknown:
        raise DefinitionError("Unknown critical job ids", tuple(unknown))
    return [j for j in known if j in chosen]


def check_barrier(instances: Iterable[JobInstance]) -> None:
    pending = tuple(i.instance_id for i in instances if not i.terminal)
    if pending:
        raise AggregationError(pending)


def aggregate(
    pipeline: Pipeline,
    *,
    critical: Optional[Iterable[str]] = None,
    warnings: Sequence[str] = (),
    actions: Sequence[ActionReport] = (),
) -> ExecutionReport:
    """
    Combine terminal outcomes into one verdict:
      Failure in a critical job  -> failure
      else any Cancelled         -> cancelled
      else                       -> success

    Only valid once every instance is terminal; raises AggregationError
    otherwise.
    """
    instances = list(pipeline.instances)
    check_barrier(instances)

    critical_ids = critical_jobs(pipeline.jobs, critical)
    critical_set = set(critical_ids)

    by_job: Dict[str, List[JobInstance]] = {j.id: [] for j in pipeline.jobs}
    for inst in instances:
        by_job[inst.job_id].append(inst)

    if any(i.outcome is Outcome.FAILURE and i.job_id in critical_set for i in instances):
        verdict: Verdict = "failure"
    elif any(i.outcome is Outcome.CANCELLED for i in instances):
        verdict = "cancelled"
    else:
        verdict = "success"

    ordered = sorted(instances, key=lambda i: (i.job.order, i.index))
    starts = [i.started_at for i in instances if i.started_at]
    ends = [i.finished_at for i in instances if i.finished_at]

    return ExecutionReport(
        pipeline=pipeline.name,
        trigger=pipeline.trigger.to_dict(),
        verdict=verdict,
        exit_code=0 if verdict == "success" else 1,
        critical=critical_ids,
        started_at=min(starts) if starts else None,
        finished_at=max(ends) if ends else None,
        instances=[
            InstanceReport(
                instance_id=i.instance_id,
                job_id=i.job_id,
                name=i.job.display_name,
                coordinate=dict(i.coordinate),
                outcome=i.outcome.value,
                critical=i.job_id in critical_set,
                started_at=i.started_at,
                finished_at=i.finished_at,
                duration=i.duration,
                cache_keys=list(i.cache_keys),
                cache_hit=i.cache_hit,
                error=i.error,
                skip_reason=i.skip_reason,
            )
            for i in ordered
        ],
        jobs=[
            JobReport(
                job_id=j.id,
                name=j.display_name,
                outcome=job_outcome(by_job[j.id]).value,
                critical=j.id in critical_set,
                instance_count=len(by_job[j.id]),
            )
            for j in pipeline.jobs
        ],
        actions=list(actions),
        warnings=list(warnings),
    )
