"""Parse a raw pipeline definition mapping into immutable model objects.

Accepted shape (keys in either camelCase or the workflow-file spelling)::

    name: ci
    env: {PYTHON_VERSION: "3.12"}
    jobs:
      test:
        needs: [lint]            # or dependsOn
        if: success()
        matrix: {py: ["3.11", "3.12"], exclude: [{py: "3.11"}]}
        failFast: false
        critical: true
        cache: {key: ..., restoreKeys: [...], path: [...]}
        steps: [...]             # opaque
    actions:
      autofix: {if: ..., steps: [...]}

Unknown job keys (runs-on, timeout-minutes, ...) are ignored. A
``strategy: {matrix: ..., fail-fast: ...}`` block and an ``actions/cache``
step are understood as well.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .conditions import DEFAULT_CONDITION, parse_condition
from .errors import DefinitionError
from .matrix import validate_matrix
from .model import CacheSpec, JobDefinition, MatrixSpec, Pipeline, PostAction, TriggerContext

_MATRIX_KEYS = ("exclude", "include")


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _lines(value: Any) -> List[str]:
    # restore-keys is often a YAML block string with one key per line
    if isinstance(value, str):
        return [line.strip() for line in value.splitlines() if line.strip()]
    return [str(v) for v in _as_list(value)]


def _env(value: Any) -> Dict[str, str]:
    return {str(k): "" if v is None else str(v).lower() if isinstance(v, bool) else str(v) for k, v in (value or {}).items()}


class CacheModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    key: str
    restore_keys: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("restoreKeys", "restore-keys", "restore_keys"),
    )
    path: List[str] = Field(default_factory=list)

    @field_validator("key")
    @classmethod
    def _key_not_blank(cls, v: str) -> str:
        if not str(v).strip():
            raise ValueError("cache key template must not be empty")
        return str(v)

    @field_validator("restore_keys", "path", mode="before")
    @classmethod
    def _split(cls, v: Any) -> List[str]:
        return _lines(v)

    def to_spec(self) -> CacheSpec:
        return CacheSpec(key=self.key, restore_keys=tuple(self.restore_keys), path=tuple(self.path))


class JobModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Optional[str] = None
    needs: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("needs", "dependsOn", "depends_on"),
    )
    condition: Optional[str] = Field(default=None, validation_alias=AliasChoices("if", "condition"))
    matrix: Optional[Dict[str, Any]] = None
    strategy: Optional[Dict[str, Any]] = None
    fail_fast: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices("failFast", "fail-fast", "fail_fast"),
    )
    critical: bool = True
    cache: Optional[CacheModel] = None
    env: Dict[str, Any] = Field(default_factory=dict)
    steps: List[Any] = Field(default_factory=list)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> List[str]:
        return [str(x) for x in _as_list(v)]

    @field_validator("condition", mode="before")
    @classmethod
    def _condition_text(cls, v: Any) -> Optional[str]:
        if isinstance(v, bool):
            return "always()" if v else "false"
        return None if v is None else str(v)


class ActionModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    condition: Optional[str] = Field(default=None, validation_alias=AliasChoices("if", "condition"))
    env: Dict[str, Any] = Field(default_factory=dict)
    steps: List[Any] = Field(default_factory=list)


# ---------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------

def _matrix_spec(job_id: str, raw: Optional[Mapping[str, Any]]) -> MatrixSpec:
    if not raw:
        return MatrixSpec()
    if not isinstance(raw, Mapping):
        raise DefinitionError("matrix must be a mapping of axis -> values", (job_id,))

    axes: List[Tuple[str, Tuple[Any, ...]]] = []
    for axis, values in raw.items():
        if axis in _MATRIX_KEYS:
            continue
        if not isinstance(values, (list, tuple)):
            raise DefinitionError(f"matrix axis '{axis}' must be a list of values", (job_id,))
        axes.append((str(axis), tuple(values)))

    def _rules(key: str) -> Tuple[Mapping[str, Any], ...]:
        rules = raw.get(key) or []
        if not isinstance(rules, list) or not all(isinstance(r, Mapping) for r in rules):
            raise DefinitionError(f"matrix '{key}' must be a list of mappings", (job_id,))
        return tuple(dict(r) for r in rules)

    spec = MatrixSpec(axes=tuple(axes), exclude=_rules("exclude"), include=_rules("include"))
    validate_matrix(job_id, spec)
    return spec


def _cache_from_steps(steps: List[Any]) -> Optional[CacheModel]:
    for step in steps:
        if isinstance(step, Mapping) and str(step.get("uses", "")).startswith("actions/cache"):
            return CacheModel.model_validate(step.get("with") or {})
    return None


def _check_condition(owner: str, text: Optional[str]) -> str:
    text = text if text not in (None, "") else DEFAULT_CONDITION
    try:
        parse_condition(text)
    except DefinitionError as e:
        raise DefinitionError(f"Malformed condition: {e.message}", (owner,)) from e
    return text


def _job(job_id: str, raw: Any, order: int) -> JobDefinition:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise DefinitionError("job definition must be a mapping", (job_id,))
    try:
        model = JobModel.model_validate(raw)
        cache = model.cache or _cache_from_steps(model.steps)
    except ValidationError as e:
        raise DefinitionError(f"Invalid job definition: {_first_error(e)}", (job_id,)) from e

    strategy = model.strategy or {}
    matrix_raw = model.matrix if model.matrix is not None else strategy.get("matrix")
    fail_fast = model.fail_fast
    if fail_fast is None:
        fail_fast = bool(strategy.get("fail-fast", strategy.get("failFast", False)))

    return JobDefinition(
        id=job_id,
        needs=tuple(model.needs),
        condition=_check_condition(job_id, model.condition),
        matrix=_matrix_spec(job_id, matrix_raw),
        cache=cache.to_spec() if cache is not None else None,
        steps=tuple(model.steps),
        name=model.name or "",
        env=_env(model.env),
        critical=model.critical,
        fail_fast=fail_fast,
        order=order,
    )


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def parse_pipeline(
    data: Mapping[str, Any],
    *,
    name: str = "pipeline",
    trigger: Optional[TriggerContext] = None,
) -> Pipeline:
    """
    Build a Pipeline from a definition mapping. Raises DefinitionError for
    anything malformed; graph-level checks (unknown needs, cycles) are left
    to ciflow.dag.build_dag.
    """
    if not isinstance(data, Mapping):
        raise DefinitionError("pipeline definition must be a mapping")

    if "jobs" in data:
        jobs_raw = data.get("jobs") or {}
        pipeline_name = str(data.get("name") or name)
        env = _env(data.get("env"))
        actions_raw = data.get("actions") or {}
    else:
        jobs_raw, pipeline_name, env, actions_raw = data, name, {}, {}

    if not isinstance(jobs_raw, Mapping) or not jobs_raw:
        raise DefinitionError("pipeline defines no jobs")
    if not isinstance(actions_raw, Mapping):
        raise DefinitionError("actions must be a mapping of id -> action")

    jobs = tuple(_job(str(job_id), raw, i) for i, (job_id, raw) in enumerate(jobs_raw.items()))

    actions: List[PostAction] = []
    for action_id, raw in actions_raw.items():
        try:
            model = ActionModel.model_validate(raw or {})
        except ValidationError as e:
            raise DefinitionError(f"Invalid action: {_first_error(e)}", (str(action_id),)) from e
        actions.append(
            PostAction(
                id=str(action_id),
                condition=_check_condition(str(action_id), model.condition),
                steps=tuple(model.steps),
                env=_env(model.env),
            )
        )

    return Pipeline(
        name=pipeline_name,
        jobs=jobs,
        env=env,
        actions=tuple(actions),
        trigger=trigger or TriggerContext(),
    )
