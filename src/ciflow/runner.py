# runner.py
from __future__ import annotations

import json
import logging
import runpy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import yaml

from .actions import PostActionRunner
from .aggregate import ExecutionReport, aggregate
from .cache import hash_files, hash_key, hash_patterns, runner_info
from .dag import Dag, build_dag
from .errors import DefinitionError
from .matrix import Expansion, expand
from .model import JobInstance, Pipeline, TriggerContext
from .scheduler import Scheduler
from .schema import parse_pipeline
from .steps import ShellStepRunner, StepRunner
from .stores import CacheStore

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yml", ".yaml", ".json", ".py")


# ----------------------------------------------------------------------
# Definition loading
# ----------------------------------------------------------------------

def load_definition(path: str | Path) -> Dict[str, Any]:
    """
    Read a pipeline definition mapping from disk.

    .yml/.yaml and .json files hold the mapping directly. A .py file is
    executed and must define either:
      - PIPELINE = {...}
      - pipeline() -> {...}
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    if p.suffix not in DEFINITION_SUFFIXES:
        raise DefinitionError(f"Unsupported pipeline file type '{p.suffix}' ({p.name})")

    if p.suffix == ".py":
        globals_dict = runpy.run_path(str(p), run_name=f"ciflow_pipeline_{p.stem}")
        if callable(globals_dict.get("pipeline")):
            data = globals_dict["pipeline"]()
        elif "PIPELINE" in globals_dict:
            data = globals_dict["PIPELINE"]
        else:
            raise DefinitionError(f"{p.name} must define PIPELINE = {{...}} or pipeline() -> dict")
    else:
        text = p.read_text(encoding="utf-8")
        try:
            data = json.loads(text) if p.suffix == ".json" else yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise DefinitionError(f"Could not parse {p.name}: {e}") from e

    if not isinstance(data, Mapping):
        raise DefinitionError(f"{p.name} does not contain a pipeline mapping")
    return dict(data)


def load_pipeline(path: str | Path, trigger: Optional[TriggerContext] = None) -> Pipeline:
    return parse_pipeline(load_definition(path), name=Path(path).stem, trigger=trigger)


# ----------------------------------------------------------------------
# Planning
# ----------------------------------------------------------------------

@dataclass
class Plan:
    dag: Dag
    expansions: Dict[str, Expansion]

    @property
    def instances(self) -> List[JobInstance]:
        return [i for name in self.dag.order for i in self.expansions[name].instances]


def plan(pipeline: Pipeline) -> Plan:
    """
    Validate the graph and expand every job. Raises DefinitionError before
    anything runs; on success pipeline.instances holds the fresh instances.
    """
    dag = build_dag(pipeline.jobs)
    expansions = {name: expand(dag.jobs[name]) for name in dag.order}
    result = Plan(dag=dag, expansions=expansions)
    pipeline.instances = result.instances
    return result


def compute_hashes(pipeline: Pipeline, repo_root: str | Path = ".") -> Dict[str, str]:
    """Precompute every hashFiles(...) digest the pipeline's cache keys use."""
    hashes: Dict[str, str] = {}
    for job in pipeline.jobs:
        if job.cache is None:
            continue
        for patterns in hash_patterns(job.cache):
            key = hash_key(patterns)
            if key not in hashes:
                hashes[key] = hash_files(repo_root, patterns)
                if not hashes[key]:
                    logger.warning("hashFiles(%s) matched no files under %s", key, repo_root)
    return hashes


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_pipeline(
    pipeline: Pipeline,
    *,
    runner: Optional[StepRunner] = None,
    store: Optional[CacheStore] = None,
    max_workers: Optional[int] = None,
    fail_fast: bool = False,
    critical: Optional[Iterable[str]] = None,
    repo_root: str | Path = ".",
    hashes: Optional[Mapping[str, str]] = None,
    on_outcome: Optional[Callable[[JobInstance], None]] = None,
) -> ExecutionReport:
    """
    Plan, schedule, run post-run actions and aggregate.

    DefinitionError propagates before any job starts. Job failures never
    raise; they end up in the returned report.
    """
    p = plan(pipeline)
    runner = runner or ShellStepRunner(repo_root)
    runner_context = runner_info()
    if hashes is None:
        hashes = compute_hashes(pipeline, repo_root)

    # fail fast on unknown critical ids, before anything runs
    if critical is not None:
        critical = list(critical)
        unknown = sorted(set(critical) - set(p.dag.jobs))
        if unknown:
            raise DefinitionError("Unknown critical job ids", tuple(unknown))

    scheduler = Scheduler(
        p.dag,
        p.expansions,
        pipeline.trigger,
        runner,
        store=store,
        max_workers=max_workers,
        fail_fast=fail_fast,
        env=pipeline.env,
        hashes=hashes,
        runner_context=runner_context,
        on_outcome=on_outcome,
    )
    scheduler.run()

    actions = PostActionRunner(
        runner,
        pipeline.trigger,
        env=pipeline.env,
        runner_context=runner_context,
        run_cancelled=scheduler.cancelled,
    )
    action_reports = actions.run(pipeline)

    return aggregate(
        pipeline,
        critical=critical,
        warnings=[*scheduler.warnings, *actions.warnings],
        actions=action_reports,
    )
