"""Condition expressions: parsed once into a small typed tree, then evaluated
against dependency outcomes and an explicit trigger context.

Grammar (GitHub-Actions-like):

    expr       := or
    or         := and ('||' and)*
    and        := unary ('&&' unary)*
    unary      := '!' unary | comparison
    comparison := primary (('==' | '!=') primary)?
    primary    := literal | '(' expr ')' | NAME '(' args? ')' | NAME

Status functions: always(), success(), failure(), cancelled() (bare names
accepted). An expression that never mentions a status function is read as
``success() && (expr)``.

Evaluation is three-valued (True / False / UNKNOWN) so the scheduler can ask
whether a condition can still be satisfied while dependencies are pending.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, FrozenSet, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import ConditionEvaluationError, DefinitionError
from .model import Outcome, TERMINAL, TriggerContext

logger = logging.getLogger(__name__)

DEFAULT_CONDITION = "success()"
STATUS_FUNCTIONS = frozenset({"always", "success", "failure", "cancelled"})
VALUE_FUNCTIONS = frozenset({"contains", "startsWith", "endsWith"})
REF_ROOTS = frozenset({
    "event", "branch", "is_pull_request", "isPullRequest",
    "trigger", "github", "metadata", "env", "matrix", "runner",
})


class _Unknown:
    def __repr__(self) -> str:
        return "UNKNOWN"

    def __bool__(self) -> bool:
        raise TypeError("UNKNOWN has no truth value")


UNKNOWN = _Unknown()
Tri = Union[bool, _Unknown]


# ---------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    path: str


@dataclass(frozen=True)
class Status:
    kind: str


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class And:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Or:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...]


Node = Union[Literal, Ref, Status, Not, And, Or, Compare, Call]


@dataclass(frozen=True)
class Condition:
    source: str
    tree: Node
    statuses: FrozenSet[str] = frozenset()

    @property
    def runs_after_cancel(self) -> bool:
        """always() / cancelled() jobs are still evaluated once a run is cancelled."""
        return bool(self.statuses & {"always", "cancelled"})


# ---------------------------------------------------------------------
# Tokenizer / parser
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>&&|\|\||==|!=|!|\(|\)|,)
  | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_*][A-Za-z0-9_\-]*)*)
    """,
    re.VERBOSE,
)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise DefinitionError(f"Unexpected character {text[pos]!r} in condition {text!r}")
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append((kind, m.group()))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0
        self.statuses: set[str] = set()

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, value: str | None = None) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise DefinitionError(f"Unexpected end of condition {self.text!r}")
        if value is not None and tok[1] != value:
            raise DefinitionError(f"Expected {value!r} but found {tok[1]!r} in condition {self.text!r}")
        self.pos += 1
        return tok

    def _at(self, value: str) -> bool:
        tok = self._peek()
        return tok is not None and tok[0] == "op" and tok[1] == value

    def parse(self) -> Node:
        if not self.tokens:
            raise DefinitionError("Empty condition expression")
        node = self._or()
        if self._peek() is not None:
            raise DefinitionError(f"Unexpected {self._peek()[1]!r} in condition {self.text!r}")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._at("||"):
            self._take()
            node = Or(node, self._and())
        return node

    def _and(self) -> Node:
        node = self._unary()
        while self._at("&&"):
            self._take()
            node = And(node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._at("!"):
            self._take()
            return Not(self._unary())
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._primary()
        if self._at("==") or self._at("!="):
            op = self._take()[1]
            return Compare(op, left, self._primary())
        return left

    def _primary(self) -> Node:
        kind, value = self._take()
        if kind == "string":
            return Literal(value[1:-1].replace("''", "'"))
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "op":
            if value == "(":
                node = self._or()
                self._take(")")
                return node
            raise DefinitionError(f"Unexpected {value!r} in condition {self.text!r}")

        # name
        if value in ("true", "false"):
            return Literal(value == "true")
        if value == "null":
            return Literal(None)

        if self._at("("):
            self._take()
            args: List[Node] = []
            if not self._at(")"):
                args.append(self._or())
                while self._at(","):
                    self._take()
                    args.append(self._or())
            self._take(")")
            return self._call(value, args)

        if value in STATUS_FUNCTIONS:
            self.statuses.add(value)
            return Status(value)

        root = value.split(".", 1)[0]
        if root not in REF_ROOTS:
            raise DefinitionError(f"Unknown context '{value}' in condition {self.text!r}")
        return Ref(value)

    def _call(self, name: str, args: List[Node]) -> Node:
        if name in STATUS_FUNCTIONS:
            if args:
                raise DefinitionError(f"{name}() takes no arguments")
            self.statuses.add(name)
            return Status(name)
        if name in VALUE_FUNCTIONS:
            if len(args) != 2:
                raise DefinitionError(f"{name}() takes exactly two arguments")
            return Call(name, tuple(args))
        raise DefinitionError(f"Unknown function '{name}' in condition {self.text!r}")


def _strip_wrapper(text: str) -> str:
    text = text.strip()
    if text.startswith("${{") and text.endswith("}}"):
        text = text[3:-2].strip()
    return text


@lru_cache(maxsize=512)
def parse_condition(text: str | None) -> Condition:
    """Parse an expression. Raises DefinitionError if it is malformed."""
    source = _strip_wrapper(text or "") or DEFAULT_CONDITION
    parser = _Parser(source)
    tree = parser.parse()
    if not parser.statuses:
        tree = And(Status("success"), tree)
        parser.statuses.add("success")
    return Condition(source=source, tree=tree, statuses=frozenset(parser.statuses))


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

class Eligibility(str, Enum):
    ELIGIBLE = "eligible"
    NOT_ELIGIBLE = "not_eligible"


@dataclass
class Evaluation:
    eligibility: Eligibility
    reason: str = ""
    warnings: List[str] = field(default_factory=list)

    @property
    def eligible(self) -> bool:
        return self.eligibility is Eligibility.ELIGIBLE


@dataclass(frozen=True)
class Scope:
    """Everything a condition may look at, apart from dependency outcomes."""
    trigger: TriggerContext
    coordinate: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    runner: Mapping[str, str] = field(default_factory=dict)
    run_cancelled: bool = False

    def lookup(self, path: str) -> Any:
        root, _, rest = path.partition(".")
        if root == "matrix" and rest:
            if rest in self.coordinate:
                return self.coordinate[rest]
            raise ConditionEvaluationError(path)
        if root == "runner" and rest:
            if rest in self.runner:
                return self.runner[rest]
            raise ConditionEvaluationError(path)
        if root == "env" and rest and rest in self.env:
            return self.env[rest]
        try:
            return self.trigger.lookup(path)
        except KeyError:
            raise ConditionEvaluationError(path) from None


class _Evaluator:
    def __init__(self, deps: Sequence[Outcome], scope: Scope):
        self.deps = list(deps)
        self.scope = scope
        self.pending = any(o not in TERMINAL for o in self.deps)

    def truth(self, node: Node) -> Tri:
        if isinstance(node, Status):
            return self._status(node.kind)
        if isinstance(node, Not):
            v = self.truth(node.operand)
            return UNKNOWN if v is UNKNOWN else not v
        if isinstance(node, And):
            left = self.truth(node.left)
            if left is False:
                return False
            right = self.truth(node.right)
            if right is False:
                return False
            if left is UNKNOWN or right is UNKNOWN:
                return UNKNOWN
            return True
        if isinstance(node, Or):
            left = self.truth(node.left)
            if left is True:
                return True
            right = self.truth(node.right)
            if right is True:
                return True
            if left is UNKNOWN or right is UNKNOWN:
                return UNKNOWN
            return False
        value = self.value(node)
        if value is UNKNOWN:
            return UNKNOWN
        return _truthy(value)

    def value(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Ref):
            return self.scope.lookup(node.path)
        if isinstance(node, Compare):
            left, right = self.value(node.left), self.value(node.right)
            if left is UNKNOWN or right is UNKNOWN:
                return UNKNOWN
            equal = _equals(left, right)
            return equal if node.op == "==" else not equal
        if isinstance(node, Call):
            args = [self.value(a) for a in node.args]
            if any(a is UNKNOWN for a in args):
                return UNKNOWN
            return _call(node.name, args[0], args[1])
        return self.truth(node)

    def _status(self, kind: str) -> Tri:
        deps = self.deps
        if kind == "always":
            return True
        if kind == "success":
            if any(o in TERMINAL and o is not Outcome.SUCCESS for o in deps):
                return False
            return UNKNOWN if self.pending else True
        if kind == "failure":
            if any(o is Outcome.FAILURE for o in deps):
                return True
            return UNKNOWN if self.pending else False
        if kind == "cancelled":
            if self.scope.run_cancelled or any(o is Outcome.CANCELLED for o in deps):
                return True
            return UNKNOWN if self.pending else False
        raise ValueError(kind)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value != "" and value.lower() != "false"
    return bool(value)


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return left.casefold() == right.casefold()
    if isinstance(left, bool) and isinstance(right, str):
        return str(left).lower() == right.lower()
    if isinstance(right, bool) and isinstance(left, str):
        return str(right).lower() == left.lower()
    return left == right


def _call(name: str, haystack: Any, needle: Any) -> bool:
    if name == "contains":
        if isinstance(haystack, (list, tuple, set, frozenset)):
            return any(_equals(item, needle) for item in haystack)
        return str(needle).casefold() in str(haystack).casefold()
    if name == "startsWith":
        return str(haystack).casefold().startswith(str(needle).casefold())
    if name == "endsWith":
        return str(haystack).casefold().endswith(str(needle).casefold())
    raise ValueError(name)


def evaluate(
    condition: Condition | str,
    dependency_outcomes: Sequence[Outcome],
    scope: Scope,
) -> Evaluation:
    """
    Decide whether an instance may run. All dependency outcomes must be
    terminal; the scheduler guarantees this.

    A reference to a missing context field fails closed: NotEligible plus a
    warning, never an exception.
    """
    if isinstance(condition, str):
        condition = parse_condition(condition)

    try:
        result = _Evaluator(dependency_outcomes, scope).truth(condition.tree)
    except ConditionEvaluationError as e:
        msg = f"condition {condition.source!r}: {e}; treated as false"
        logger.warning(msg)
        return Evaluation(Eligibility.NOT_ELIGIBLE, reason=str(e), warnings=[msg])

    if result is True:
        return Evaluation(Eligibility.ELIGIBLE)
    return Evaluation(Eligibility.NOT_ELIGIBLE, reason=f"condition {condition.source!r} not met")


def can_still_run(
    condition: Condition | str,
    dependency_outcomes: Sequence[Outcome],
    scope: Scope,
    warnings: Optional[List[str]] = None,
) -> bool:
    """
    False only when the condition is already decided false given the
    outcomes known so far (used by fail-fast to skip doomed instances).

    A missing context reference also decides it false; the message is
    appended to `warnings` when a list is given.
    """
    if isinstance(condition, str):
        condition = parse_condition(condition)
    try:
        result = _Evaluator(dependency_outcomes, scope).truth(condition.tree)
    except ConditionEvaluationError as e:
        msg = f"condition {condition.source!r}: {e}; treated as false"
        logger.warning(msg)
        if warnings is not None:
            warnings.append(msg)
        return False
    return result is not False
