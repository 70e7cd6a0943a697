# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidTransition


class Outcome(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL


TERMINAL = frozenset({Outcome.SUCCESS, Outcome.FAILURE, Outcome.SKIPPED, Outcome.CANCELLED})

# current -> allowed next outcomes
_TRANSITIONS: Dict[Outcome, frozenset] = {
    Outcome.PENDING: frozenset({Outcome.RUNNING, Outcome.SKIPPED, Outcome.CANCELLED}),
    Outcome.RUNNING: frozenset({Outcome.SUCCESS, Outcome.FAILURE, Outcome.CANCELLED}),
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _frozen_mapping(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class Step:
    """A single opaque step inside a job. Only the step runner looks inside."""
    name: str
    run: str = ""
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CacheSpec:
    """Primary key template + ordered fallback (restore) key templates."""
    key: str
    restore_keys: Tuple[str, ...] = ()
    path: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MatrixSpec:
    axes: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()
    include: Tuple[Mapping[str, Any], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.axes and not self.include

    def axis_names(self) -> List[str]:
        return [name for name, _ in self.axes]


@dataclass(frozen=True)
class JobDefinition:
    """
    An immutable job as accepted by the graph builder.

    `needs` lists job ids that must be terminal before this job is evaluated.
    `condition` is the raw expression text; it is parsed once by
    ciflow.conditions.parse_condition.
    """
    id: str
    needs: Tuple[str, ...] = ()
    condition: str = "success()"
    matrix: MatrixSpec = field(default_factory=MatrixSpec)
    cache: Optional[CacheSpec] = None
    steps: Tuple[Any, ...] = ()
    name: str = ""
    env: Mapping[str, str] = field(default_factory=dict)
    critical: bool = True
    fail_fast: bool = False
    order: int = 0

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(eq=False)
class JobInstance:
    """
    One concrete unit of work produced by matrix expansion.

    Only the scheduler mutates `outcome` and the timestamps, through the
    transition helpers below.
    """
    job: JobDefinition
    coordinate: Mapping[str, Any] = field(default_factory=dict)
    index: int = 0

    outcome: Outcome = Outcome.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cache_keys: List[str] = field(default_factory=list)
    cache_hit: Optional[str] = None
    error: Optional[str] = None
    skip_reason: Optional[str] = None

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def instance_id(self) -> str:
        if not self.coordinate:
            return self.job.id
        coords = ", ".join(f"{k}={v}" for k, v in self.coordinate.items())
        return f"{self.job.id} ({coords})"

    @property
    def terminal(self) -> bool:
        return self.outcome in TERMINAL

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def _move(self, target: Outcome) -> None:
        allowed = _TRANSITIONS.get(self.outcome, frozenset())
        if target not in allowed:
            raise InvalidTransition(self.instance_id, self.outcome.value, target.value)
        self.outcome = target

    def start(self) -> None:
        self._move(Outcome.RUNNING)
        self.started_at = now_utc()

    def finish(self, success: bool, error: str | None = None) -> None:
        self._move(Outcome.SUCCESS if success else Outcome.FAILURE)
        self.finished_at = now_utc()
        self.error = error

    def skip(self, reason: str) -> None:
        self._move(Outcome.SKIPPED)
        self.finished_at = now_utc()
        self.skip_reason = reason

    def cancel(self, reason: str) -> None:
        self._move(Outcome.CANCELLED)
        self.finished_at = now_utc()
        self.skip_reason = reason


@dataclass(frozen=True)
class TriggerContext:
    """
    What triggered the run. Passed explicitly to the condition evaluator and
    the cache key resolver; never read from ambient state.
    """
    event: str = "push"
    branch: str = ""
    is_pull_request: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # frozen: bypass __setattr__ to swap in read-only views
        object.__setattr__(self, "metadata", _frozen_mapping(self.metadata))
        object.__setattr__(self, "env", _frozen_mapping(self.env))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TriggerContext":
        return cls(
            event=str(data.get("event", "push")),
            branch=str(data.get("branch", "")),
            is_pull_request=bool(data.get("isPullRequest", data.get("is_pull_request", False))),
            metadata=data.get("metadata") or {},
            env=data.get("env") or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "branch": self.branch,
            "isPullRequest": self.is_pull_request,
            "metadata": dict(self.metadata),
        }

    def lookup(self, path: str) -> Any:
        """
        Resolve a dotted context reference. Raises KeyError if it names
        nothing.

        Supported roots: event, branch, is_pull_request, trigger.*,
        github.*, metadata.*, env.*
        """
        parts = path.split(".")
        root, rest = parts[0], parts[1:]

        if root == "trigger" and rest:
            root, rest = rest[0], rest[1:]

        if root == "github" and rest:
            field_name, rest = rest[0], rest[1:]
            if field_name == "event_name" and not rest:
                return self.event
            if field_name in ("ref_name", "branch") and not rest:
                return self.branch
            if field_name == "head_ref" and not rest:
                return self.metadata.get("head_ref", self.branch if self.is_pull_request else "")
            return _dig(self.metadata, [field_name, *rest], path)

        if not rest:
            if root == "event":
                return self.event
            if root == "branch":
                return self.branch
            if root in ("is_pull_request", "isPullRequest"):
                return self.is_pull_request

        if root == "metadata" and rest:
            return _dig(self.metadata, rest, path)
        if root == "env" and len(rest) == 1:
            if rest[0] in self.env:
                return self.env[rest[0]]
            raise KeyError(path)

        raise KeyError(path)


def _dig(data: Mapping[str, Any], parts: List[str], path: str) -> Any:
    cur: Any = data
    for p in parts:
        if not isinstance(cur, Mapping) or p not in cur:
            raise KeyError(path)
        cur = cur[p]
    return cur


@dataclass(frozen=True)
class PostAction:
    """
    A side effect run at most once per pipeline run, after the DAG completes
    (e.g. auto-fix and push). Gated by the same condition evaluator as jobs.
    """
    id: str
    condition: str = "success()"
    steps: Tuple[Any, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass
class Pipeline:
    name: str
    jobs: Tuple[JobDefinition, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    actions: Tuple[PostAction, ...] = ()
    trigger: TriggerContext = field(default_factory=TriggerContext)
    instances: List[JobInstance] = field(default_factory=list)

    def job(self, job_id: str) -> JobDefinition:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)
