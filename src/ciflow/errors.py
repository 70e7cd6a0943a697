# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple


class CIError(Exception):
    """Base class for every error raised by ciflow."""


@dataclass
class DefinitionError(CIError):
    """
    The pipeline definition is unusable: cycle, unknown dependency,
    duplicate id, malformed condition / matrix / cache spec.

    Raised before anything is dispatched.
    """
    message: str
    job_ids: Tuple[str, ...] = ()

    def __str__(self) -> str:
        if self.job_ids:
            return f"{self.message} (jobs: {', '.join(self.job_ids)})"
        return self.message


@dataclass
class ConditionEvaluationError(CIError):
    """A predicate referenced a context field that does not exist."""
    reference: str

    def __str__(self) -> str:
        return f"unknown context reference '{self.reference}'"


@dataclass
class JobExecutionError(CIError):
    """The step sequence of an instance failed or raised."""
    instance_id: str
    message: str

    def __str__(self) -> str:
        return f"[{self.instance_id}] {self.message}"


@dataclass
class StepFailure(CIError):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class AggregationError(CIError):
    """Aggregation was attempted while instances were still pending or running."""
    pending: Tuple[str, ...] = field(default_factory=tuple)

    def __str__(self) -> str:
        return f"aggregation barrier violated, non-terminal instances: {list(self.pending)}"


@dataclass
class InvalidTransition(CIError):
    instance_id: str
    current: str
    target: str

    def __str__(self) -> str:
        return f"[{self.instance_id}] illegal outcome transition {self.current} -> {self.target}"
