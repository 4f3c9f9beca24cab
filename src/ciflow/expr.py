# expr.py
"""
Expression language for conditions and task parameters.

Grammar (closed, typed):

    expr    := or
    or      := and ('||' and)*
    and     := not ('&&' not)*
    not     := '!' not | compare
    compare := primary (('==' | '!=' | '<' | '<=' | '>' | '>=') primary)?
    primary := literal | call | reference | '(' expr ')'
    call    := IDENT '(' [expr (',' expr)*] ')'
    reference := IDENT ('.' IDENT)*
    literal := 'string' | number | true | false | null

Contexts: inputs.X, env.X, matrix.X, needs.<job>.result,
needs.<job>.outputs.<key>, steps.<id>.outputs.<key>, steps.<id>.outcome,
job.status. Status functions: always(), success(), failure(), cancelled().

`&&` and `||` return one of their operands, so
`needs.build.result == 'success' && 'green' || 'red'` yields a string.
"""
from __future__ import annotations

import math
import operator
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .errors import ExpressionSyntaxError, PendingReference, UnresolvedReference
from .model import Condition, ConditionKind, JobInstance, format_value, unwrap_expression


STATUS_FUNCTIONS = ("always", "success", "failure", "cancelled")

_TOKEN = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<number>-?\d+(?:\.\d+)?)
    | (?P<string>'(?:[^']|'')*')
    | (?P<op>==|!=|<=|>=|&&|\|\||[<>!(),.])
    | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)

_TEMPLATE = re.compile(r"\$\{\{((?:(?!\}\}).)*)\}\}", re.S)

_COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    parts: Tuple[str, ...]


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class BinOp:
    op: str
    left: Any
    right: Any


Node = Union[Literal, Ref, Call, Not, BinOp]


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------

def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if m is None:
            raise ExpressionSyntaxError(f"Unexpected character {text[pos]!r} at {pos}", text)
        pos = m.end()
        if m.lastgroup != "ws":
            tokens.append((m.lastgroup, m.group()))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> Tuple[Optional[str], Optional[str]]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None, None

    def _take(self) -> Tuple[Optional[str], Optional[str]]:
        tok = self._peek()
        self.pos += 1
        return tok

    def _at(self, op: str) -> bool:
        return self._peek() == ("op", op)

    def _expect(self, op: str) -> None:
        kind, text = self._take()
        if (kind, text) != ("op", op):
            found = "end of expression" if kind is None else repr(text)
            raise ExpressionSyntaxError(f"Expected '{op}', found {found}", self.text)

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionSyntaxError("Empty expression", self.text)
        node = self._or()
        if self.pos != len(self.tokens):
            raise ExpressionSyntaxError(f"Unexpected {self._peek()[1]!r}", self.text)
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._at("||"):
            self._take()
            node = BinOp("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._not()
        while self._at("&&"):
            self._take()
            node = BinOp("&&", node, self._not())
        return node

    def _not(self) -> Node:
        if self._at("!"):
            self._take()
            return Not(self._not())
        return self._compare()

    def _compare(self) -> Node:
        left = self._primary()
        kind, text = self._peek()
        if kind == "op" and text in _COMPARISONS:
            self._take()
            return BinOp(text, left, self._primary())
        return left

    def _primary(self) -> Node:
        kind, text = self._take()
        if kind is None:
            raise ExpressionSyntaxError("Unexpected end of expression", self.text)
        if kind == "number":
            return Literal(float(text) if "." in text else int(text))
        if kind == "string":
            return Literal(text[1:-1].replace("''", "'"))
        if kind == "op" and text == "(":
            node = self._or()
            self._expect(")")
            return node
        if kind == "ident":
            if text == "true":
                return Literal(True)
            if text == "false":
                return Literal(False)
            if text == "null":
                return Literal(None)
            if self._at("("):
                return self._call(text)
            parts = [text]
            while self._at("."):
                self._take()
                k, t = self._take()
                if k not in ("ident", "number"):
                    raise ExpressionSyntaxError(f"Expected a property name after '{'.'.join(parts)}.'", self.text)
                parts.append(t)
            return Ref(tuple(parts))
        raise ExpressionSyntaxError(f"Unexpected {text!r}", self.text)

    def _call(self, name: str) -> Node:
        self._expect("(")
        args: List[Node] = []
        if not self._at(")"):
            args.append(self._or())
            while self._at(","):
                self._take()
                args.append(self._or())
        self._expect(")")
        return Call(name, tuple(args))


@lru_cache(maxsize=1024)
def parse(expression: str) -> Node:
    return _Parser(unwrap_expression(expression)).parse()


def _walk(node: Node):
    yield node
    if isinstance(node, Not):
        yield from _walk(node.operand)
    elif isinstance(node, BinOp):
        yield from _walk(node.left)
        yield from _walk(node.right)
    elif isinstance(node, Call):
        for arg in node.args:
            yield from _walk(arg)


def references(expression: str) -> List[Tuple[str, ...]]:
    """Every context reference in `expression`, in source order."""
    return [n.parts for n in _walk(parse(expression)) if isinstance(n, Ref)]


def uses_status_function(expression: str) -> bool:
    return any(
        isinstance(n, Call) and n.name.lower() in STATUS_FUNCTIONS
        for n in _walk(parse(expression))
    )


def template_expressions(value: Any) -> List[str]:
    """Expressions inside `${{ }}` templates of a (possibly nested) param value."""
    if isinstance(value, str):
        return [m.group(1).strip() for m in _TEMPLATE.finditer(value)]
    if isinstance(value, Mapping):
        return [e for v in value.values() for e in template_expressions(v)]
    if isinstance(value, (list, tuple)):
        return [e for v in value for e in template_expressions(v)]
    return []


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _truthy(value: Any) -> bool:
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> float:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        left, right = left.casefold(), right.casefold()
    elif type(left) is not type(right) and not (_is_number(left) and _is_number(right)):
        left, right = _to_number(left), _to_number(right)
    try:
        return _COMPARISONS[op](left, right)
    except TypeError:
        return False


class _Evaluator:
    def __init__(self, text: str, context: Any, instance: Optional[JobInstance], job: Any):
        self.text = text
        self.context = context
        self.instance = instance if instance is not None else getattr(job, "instance", None)
        self.job = job

    def _unresolved(self, message: str) -> UnresolvedReference:
        return UnresolvedReference(message, self.text)

    def visit(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Ref):
            return self._resolve(node.parts)
        if isinstance(node, Not):
            return not _truthy(self.visit(node.operand))
        if isinstance(node, BinOp):
            left = self.visit(node.left)
            if node.op == "&&":
                return self.visit(node.right) if _truthy(left) else left
            if node.op == "||":
                return left if _truthy(left) else self.visit(node.right)
            return _compare(node.op, left, self.visit(node.right))
        if isinstance(node, Call):
            return self._call(node)
        raise ExpressionSyntaxError(f"Unsupported node {node!r}", self.text)

    # ---- functions ----

    def _call(self, node: Call) -> Any:
        name = node.name.lower()
        if name in STATUS_FUNCTIONS:
            if node.args:
                raise ExpressionSyntaxError(f"{node.name}() takes no arguments", self.text)
            return self._status(name)

        args = [self.visit(a) for a in node.args]
        if name in ("contains", "startswith", "endswith"):
            if len(args) != 2:
                raise ExpressionSyntaxError(f"{node.name}() takes 2 arguments", self.text)
            haystack = format_value(args[0]).casefold()
            needle = format_value(args[1]).casefold()
            if name == "contains":
                return needle in haystack
            if name == "startswith":
                return haystack.startswith(needle)
            return haystack.endswith(needle)
        if name == "format":
            if not args:
                raise ExpressionSyntaxError("format() needs a format string", self.text)
            values = args[1:]

            def _sub(m: "re.Match[str]") -> str:
                idx = int(m.group(1))
                if idx >= len(values):
                    raise ExpressionSyntaxError(f"format() has no argument {{{idx}}}", self.text)
                return format_value(values[idx])

            return re.sub(r"\{(\d+)\}", _sub, format_value(args[0]))
        raise ExpressionSyntaxError(f"Unknown function '{node.name}()'", self.text)

    def _status(self, name: str) -> bool:
        if name == "always":
            return True
        if name == "cancelled":
            return self.context.cancelled

        # Inside a job: the job's own earlier tasks. Job gate: its ancestors.
        if self.job is not None:
            failed = self.job.failed
        elif self.instance is not None:
            failed = self.context.ancestor_failed(self.instance)
        else:
            failed = False

        if name == "failure":
            return failed
        if failed or self.context.cancelled:
            return False
        if self.job is None and self.instance is not None:
            return self.context.dependencies_succeeded(self.instance)
        return True

    # ---- references ----

    def _resolve(self, parts: Tuple[str, ...]) -> Any:
        root, rest = parts[0], parts[1:]
        if root == "inputs":
            return self._lookup(self.context.inputs, rest, "input")
        if root == "env":
            return self._lookup(self.context.env, rest, "env")
        if root == "matrix":
            if self.instance is None:
                raise self._unresolved("matrix is only available inside a job")
            return self._lookup(self.instance.matrix, rest, "matrix axis")
        if root == "needs":
            return self._needs(rest)
        if root == "steps":
            return self._steps(rest)
        if root == "job" and rest == ("status",):
            if self.job is not None:
                return "failure" if self.job.failed else "success"
            if self.instance is not None:
                return self.context.status(self.instance.key).result
        raise self._unresolved(f"Unknown reference '{'.'.join(parts)}'")

    def _lookup(self, mapping: Mapping[str, Any], rest: Tuple[str, ...], label: str) -> Any:
        if len(rest) != 1:
            raise self._unresolved(f"Invalid {label} reference '{'.'.join(rest)}'")
        if rest[0] not in mapping:
            raise self._unresolved(f"Unknown {label} '{rest[0]}'")
        return mapping[rest[0]]

    def _needs(self, rest: Tuple[str, ...]) -> Any:
        if not rest:
            raise self._unresolved("'needs' requires a job name")
        job = rest[0]
        spec = self.instance.spec if self.instance is not None else None
        if spec is not None and job not in spec.needs:
            raise self._unresolved(f"'{job}' is not a dependency of '{spec.name}'")
        if not self.context.has_job(job):
            raise self._unresolved(f"Unknown job '{job}'")
        if not self.context.job_terminal(job):
            raise PendingReference(f"Job '{job}' has not finished", self.text)

        tail = rest[1:]
        if tail == ("result",):
            return self.context.job_status(job).result
        if len(tail) == 2 and tail[0] == "outputs":
            key = tail[1]
            producer = self.context.instances_of(job)[0].spec
            if producer is not None and key not in producer.output_names():
                raise self._unresolved(f"Job '{job}' declares no output '{key}'")
            return self.context.job_output(job, key)
        raise self._unresolved(f"Invalid reference 'needs.{'.'.join(rest)}'")

    def _steps(self, rest: Tuple[str, ...]) -> Any:
        if self.job is None:
            raise self._unresolved("steps is only available inside a job")
        if not rest or rest[0] not in self.job.steps:
            step = rest[0] if rest else ""
            raise self._unresolved(f"Unknown or not yet executed step '{step}'")
        record = self.job.steps[rest[0]]
        tail = rest[1:]
        if tail in (("outcome",), ("conclusion",)):
            return record["outcome"]
        if len(tail) == 2 and tail[0] == "outputs":
            key = tail[1]
            declared = self._declared_step_outputs(rest[0])
            if key not in declared and key not in record["outputs"]:
                raise self._unresolved(f"Step '{rest[0]}' declares no output '{key}'")
            return record["outputs"].get(key)
        raise self._unresolved(f"Invalid reference 'steps.{'.'.join(rest)}'")

    def _declared_step_outputs(self, step_id: str) -> Tuple[str, ...]:
        spec = self.job.instance.spec if self.job.instance is not None else None
        if spec is None:
            return ()
        for task in spec.tasks:
            if task.id == step_id:
                return task.outputs
        return ()


def evaluate(
    expression: str,
    context: Any,
    *,
    instance: Optional[JobInstance] = None,
    job: Any = None,
) -> Any:
    """
    Evaluate `expression` against a RunContext.

    `instance` scopes needs/matrix and the job-level status functions.
    `job` (a JobExecution) scopes steps/job.status and the task-level
    status functions. Pure: nothing in the context is modified.
    """
    text = unwrap_expression(expression)
    return _Evaluator(text, context, instance, job).visit(parse(text))


def check_condition(
    condition: Union[Condition, str, None],
    context: Any,
    *,
    instance: Optional[JobInstance] = None,
    job: Any = None,
) -> bool:
    """Evaluate a guarding condition. Custom expressions without a status
    function are implicitly `success() && (expr)`."""
    condition = Condition.coerce(condition)
    text = condition.expression
    if condition.kind is ConditionKind.CUSTOM and not uses_status_function(text):
        text = f"success() && ({text})"
    return _truthy(evaluate(text, context, instance=instance, job=job))


def interpolate(
    value: Any,
    context: Any,
    *,
    instance: Optional[JobInstance] = None,
    job: Any = None,
) -> Any:
    """
    Resolve `${{ }}` templates in a param value. A string that is exactly one
    template keeps the evaluated scalar; otherwise results are spliced as text.
    """
    if isinstance(value, str):
        whole = _TEMPLATE.fullmatch(value.strip())
        if whole:
            return evaluate(whole.group(1), context, instance=instance, job=job)
        return _TEMPLATE.sub(
            lambda m: format_value(evaluate(m.group(1), context, instance=instance, job=job)),
            value,
        )
    if isinstance(value, Mapping):
        return {k: interpolate(v, context, instance=instance, job=job) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [interpolate(v, context, instance=instance, job=job) for v in value]
    return value
