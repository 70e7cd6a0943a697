# dag.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from .errors import DefinitionError
from .model import JobDefinition

WHITE, GREY, BLACK = 0, 1, 2


@dataclass(frozen=True)
class Dag:
    """
    Validated dependency graph.

      order:      topological order (stable: declaration order breaks ties)
      rank:       longest distance from a root (roots are 0)
      needs:      job -> jobs it waits on
      dependents: job -> jobs waiting on it
    """
    jobs: Dict[str, JobDefinition]
    order: Tuple[str, ...]
    rank: Dict[str, int]
    needs: Dict[str, Tuple[str, ...]]
    dependents: Dict[str, Tuple[str, ...]]


def build_dag(jobs: Iterable[JobDefinition]) -> Dag:
    """
    Build a DAG from job definitions.

    Requires:
      - job.id: str (unique)
      - job.needs: ids of jobs that must be terminal BEFORE this job
    """
    jobs = list(jobs)
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise DefinitionError("Duplicate job ids", tuple(dupes))

    by_id = {j.id: j for j in jobs}
    dependents: Dict[str, List[str]] = {n: [] for n in ids}

    for job in jobs:
        for dep in job.needs:
            if dep not in by_id:
                raise DefinitionError(
                    f"Job '{job.id}' needs missing job '{dep}'. Known jobs: {sorted(by_id)}",
                    (job.id,),
                )
            if job.id not in dependents[dep]:
                dependents[dep].append(job.id)

    order = _topo_order(jobs, by_id)

    rank: Dict[str, int] = {}
    for name in order:
        needs = by_id[name].needs
        rank[name] = 1 + max(rank[d] for d in needs) if needs else 0

    return Dag(
        jobs=by_id,
        order=tuple(order),
        rank=rank,
        needs={j.id: tuple(dict.fromkeys(j.needs)) for j in jobs},
        dependents={k: tuple(v) for k, v in dependents.items()},
    )


def _topo_order(jobs: List[JobDefinition], by_id: Dict[str, JobDefinition]) -> List[str]:
    # Depth-first with three colours: reaching a GREY node means we walked
    # back into the current path, i.e. a cycle.
    colour: Dict[str, int] = {j.id: WHITE for j in jobs}
    order: List[str] = []

    for root in jobs:
        if colour[root.id] != WHITE:
            continue
        path: List[str] = [root.id]
        colour[root.id] = GREY
        stack = [(root.id, iter(by_id[root.id].needs))]

        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                if colour[dep] == GREY:
                    cycle = path[path.index(dep):] + [dep]
                    raise DefinitionError(
                        f"Dependency cycle: {' -> '.join(reversed(cycle))}",
                        tuple(sorted(set(cycle))),
                    )
                if colour[dep] == WHITE:
                    colour[dep] = GREY
                    path.append(dep)
                    stack.append((dep, iter(by_id[dep].needs)))
                    advanced = True
                    break
            if not advanced:
                stack.pop()
                path.pop()
                colour[node] = BLACK
                order.append(node)  # post-order: dependencies first

    return order


def topo_levels(dag: Dag) -> List[List[str]]:
    """
    Group jobs by rank. Each level only depends on earlier levels, so the
    jobs of one level can run in parallel.
    """
    levels: Dict[int, List[str]] = {}
    for name in dag.order:
        levels.setdefault(dag.rank[name], []).append(name)
    return [levels[r] for r in sorted(levels)]

