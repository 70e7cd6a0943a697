from .aggregate import ExecutionReport, aggregate
from .dag import build_dag
from .errors import AggregationError, CIError, DefinitionError
from .matrix import expand
from .model import CacheSpec, JobDefinition, JobInstance, MatrixSpec, Outcome, Pipeline, TriggerContext
from .runner import load_pipeline, plan, run_pipeline
from .schema import parse_pipeline

__all__ = [
    "AggregationError",
    "CIError",
    "CacheSpec",
    "DefinitionError",
    "ExecutionReport",
    "JobDefinition",
    "JobInstance",
    "MatrixSpec",
    "Outcome",
    "Pipeline",
    "TriggerContext",
    "aggregate",
    "build_dag",
    "expand",
    "load_pipeline",
    "parse_pipeline",
    "plan",
    "run_pipeline",
]
