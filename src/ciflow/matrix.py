# matrix.py
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from .errors import DefinitionError
from .model import JobDefinition, JobInstance, MatrixSpec


@dataclass
class Expansion:
    """
    Result of expanding one job.

    `empty` is set when no coordinates are left (an axis with zero values,
    or exclusions that remove every combination): the job produces no
    instances at all and is reported as Skipped rather than failing.
    """
    job: JobDefinition
    instances: List[JobInstance] = field(default_factory=list)
    empty: bool = False


def validate_matrix(job_id: str, spec: MatrixSpec) -> None:
    names = spec.axis_names()
    if len(set(names)) != len(names):
        raise DefinitionError("Duplicate matrix axis", (job_id,))

    for name, values in spec.axes:
        hashable = [_freeze(v) for v in values]
        if len(set(hashable)) != len(hashable):
            raise DefinitionError(f"Matrix axis '{name}' has duplicate values", (job_id,))

    for rule in spec.exclude:
        unknown = sorted(set(rule) - set(names))
        if not rule or unknown:
            raise DefinitionError(
                f"Matrix exclude rule {dict(rule)!r} names unknown axes {unknown}", (job_id,)
            )
    for extra in spec.include:
        if not extra:
            raise DefinitionError("Matrix include entry is empty", (job_id,))


def expand(job: JobDefinition) -> Expansion:
    """
    Cross-product of the job's axes (first axis varies slowest), minus
    excluded coordinates, followed by include-only coordinates.

    Deterministic: the same definition always yields the same order.
    """
    spec = job.matrix
    validate_matrix(job.id, spec)

    if spec.is_empty:
        return Expansion(job, [JobInstance(job=job, coordinate={}, index=0)])

    if any(len(values) == 0 for _, values in spec.axes):
        return Expansion(job, [], empty=True)

    names = spec.axis_names()
    coords: List[Dict[str, Any]] = []
    if spec.axes:
        for combo in itertools.product(*(values for _, values in spec.axes)):
            coord = dict(zip(names, combo))
            if any(_matches(coord, rule) for rule in spec.exclude):
                continue
            coords.append(coord)

    for extra in spec.include:
        extra = dict(extra)
        if extra not in coords:
            coords.append(extra)

    if not coords:
        return Expansion(job, [], empty=True)

    return Expansion(
        job,
        [JobInstance(job=job, coordinate=c, index=i) for i, c in enumerate(coords)],
    )


def _matches(coord: Mapping[str, Any], rule: Mapping[str, Any]) -> bool:
    return all(k in coord and coord[k] == v for k, v in rule.items())


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value
