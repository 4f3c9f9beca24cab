# dag.py
from __future__ import annotations

import itertools
from collections import deque
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from .errors import (
    CyclicDependency,
    DuplicateJob,
    ExpressionError,
    ExpressionSyntaxError,
    InvalidMatrix,
    UndeclaredReference,
    UnknownDependency,
)
from .expr import check_condition, references, template_expressions
from .model import (
    SCALAR_TYPES,
    ConditionKind,
    JobInstance,
    JobSpec,
    Matrix,
    PipelineDefinition,
    Status,
)


Coordinate = Tuple[Tuple[str, Any], ...]


# ---------------------------------------------------------------------
# Matrix expansion
# ---------------------------------------------------------------------

def expand_matrix(job: str, matrix: Optional[Matrix]) -> List[Coordinate]:
    """
    Cartesian product of the matrix axes, in axis declaration order.
    Identical coordinates are kept once; `exclude` entries are dropped.
    """
    if matrix is None or not matrix.axes:
        return [()]

    names = matrix.names
    if len(set(names)) != len(names):
        raise InvalidMatrix(f"Job '{job}' declares a matrix axis twice: {names}")
    for axis, values in matrix.axes:
        if not values:
            raise InvalidMatrix(f"Job '{job}' matrix axis '{axis}' has no values")
        for v in values:
            if not isinstance(v, SCALAR_TYPES):
                raise InvalidMatrix(
                    f"Job '{job}' matrix axis '{axis}' has non-scalar value {v!r}"
                )

    coordinates: List[Coordinate] = []
    seen: Set[Tuple[Tuple[str, str, Any], ...]] = set()
    for combo in itertools.product(*(values for _, values in matrix.axes)):
        coordinate = tuple(zip(names, combo))
        identity = tuple((n, type(v).__name__, v) for n, v in coordinate)
        if identity in seen:
            continue
        seen.add(identity)
        if matrix.is_excluded(dict(coordinate)):
            continue
        coordinates.append(coordinate)

    if not coordinates:
        raise InvalidMatrix(f"Job '{job}' matrix excludes every combination")
    return coordinates


# ---------------------------------------------------------------------
# Structural checks
# ---------------------------------------------------------------------

def _index_jobs(jobs: Tuple[JobSpec, ...]) -> Dict[str, JobSpec]:
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJob(f"Duplicate job names found: {dupes}")
    by_name = {j.name: j for j in jobs}
    for job in jobs:
        for dep in job.needs:
            if dep not in by_name:
                raise UnknownDependency(job.name, dep, names)
    return by_name


def _topological_order(specs: Dict[str, JobSpec]) -> List[str]:
    """
    Depth-first traversal in declaration order. Returns job names with every
    dependency before its dependents; raises CyclicDependency naming the cycle.
    """
    visiting: Set[str] = set()
    done: Set[str] = set()
    path: List[str] = []
    order: List[str] = []

    def visit(name: str) -> None:
        visiting.add(name)
        path.append(name)
        for dep in specs[name].needs:
            if dep in visiting:
                raise CyclicDependency(path[path.index(dep):] + [dep])
            if dep not in done:
                visit(dep)
        path.pop()
        visiting.discard(name)
        done.add(name)
        order.append(name)

    for name in specs:
        if name not in done:
            visit(name)
    return order


def _expressions_of(spec: JobSpec) -> Iterator[Tuple[str, str, Optional[Dict[str, Tuple[str, ...]]]]]:
    """
    Yield (location, expression, visible steps) for every expression a job
    carries. Visible steps maps earlier task ids to their declared outputs;
    None means the steps context is not available at that point.
    """
    if spec.condition.kind is ConditionKind.CUSTOM:
        yield f"job '{spec.name}' condition", spec.condition.expression, None

    steps: Dict[str, Tuple[str, ...]] = {}
    for task in spec.tasks:
        where = f"job '{spec.name}' task '{task.label}'"
        if task.condition.kind is ConditionKind.CUSTOM:
            yield f"{where} condition", task.condition.expression, dict(steps)
        for expression in template_expressions(dict(task.params)):
            yield f"{where} params", expression, dict(steps)
        if task.id:
            steps[task.id] = task.outputs

    for key, value in spec.outputs.items():
        for expression in template_expressions(value):
            yield f"job '{spec.name}' output '{key}'", expression, dict(steps)


def _check_reference(
    parts: Tuple[str, ...],
    spec: JobSpec,
    specs: Dict[str, JobSpec],
    definition: PipelineDefinition,
    steps: Optional[Dict[str, Tuple[str, ...]]],
) -> Optional[str]:
    """Return a problem description, or None when the reference is declared."""
    root, rest = parts[0], parts[1:]
    if root == "inputs":
        if len(rest) == 1 and rest[0] in definition.triggers.inputs:
            return None
        return "is not a declared trigger input"
    if root == "env":
        if len(rest) == 1 and rest[0] in definition.env:
            return None
        return "is not a pipeline env variable"
    if root == "matrix":
        if len(rest) == 1 and spec.matrix is not None and rest[0] in spec.matrix.names:
            return None
        return "is not a matrix axis of this job"
    if root == "needs":
        if not rest or rest[0] not in spec.needs:
            return "does not name a direct dependency (add it to needs)"
        producer = specs[rest[0]]
        if rest[1:] == ("result",):
            return None
        if len(rest) == 3 and rest[1] == "outputs":
            if rest[2] in producer.output_names():
                return None
            return f"is not a declared output of job '{producer.name}'"
        return "is not a valid needs reference"
    if root == "steps":
        if steps is None:
            return "steps are only visible inside a job"
        if not rest or rest[0] not in steps:
            return "does not name an earlier task id of this job"
        if rest[1:] in (("outcome",), ("conclusion",)):
            return None
        if len(rest) == 3 and rest[1] == "outputs" and rest[2] in steps[rest[0]]:
            return None
        return "is not a declared output of that task"
    if root == "job" and rest == ("status",):
        return None
    return "is not a known context"


def _check_references(definition: PipelineDefinition, specs: Dict[str, JobSpec]) -> None:
    for spec in definition.jobs:
        for where, expression, steps in _expressions_of(spec):
            try:
                refs = references(expression)
            except ExpressionSyntaxError:
                # malformed text fails the job when it is evaluated
                continue
            for parts in refs:
                problem = _check_reference(parts, spec, specs, definition, steps)
                if problem:
                    raise UndeclaredReference(f"{where}: '{'.'.join(parts)}' {problem}")


# ---------------------------------------------------------------------
# Job graph
# ---------------------------------------------------------------------

class JobGraph:
    """
    DAG of job instances built from a PipelineDefinition.

    Construction is where every structural error surfaces: duplicate or
    unknown jobs, cycles, bad matrices and undeclared references.
    Instances are stored in topological order.
    """

    def __init__(self, definition: PipelineDefinition):
        self.definition = definition
        self.specs = _index_jobs(definition.jobs)
        self.order = _topological_order(self.specs)
        _check_references(definition, self.specs)

        self.instances: List[JobInstance] = []
        self._by_job: Dict[str, List[JobInstance]] = {}
        for name in self.order:
            spec = self.specs[name]
            depends_on = tuple(
                inst.key for dep in spec.needs for inst in self._by_job[dep]
            )
            created = []
            for coordinate in expand_matrix(name, spec.matrix):
                created.append(
                    JobInstance(name=name, coordinate=coordinate, spec=spec, depends_on=depends_on)
                )
            keys = [i.key for i in created]
            if len(set(keys)) != len(keys):
                raise InvalidMatrix(f"Job '{name}' matrix values collide when rendered: {keys}")
            self._by_job[name] = created
            self.instances.extend(created)

        self._by_key: Dict[str, JobInstance] = {i.key: i for i in self.instances}
        if len(self._by_key) != len(self.instances):
            seen: Set[str] = set()
            for inst in self.instances:
                if inst.key in seen:
                    raise DuplicateJob(
                        f"Instance key '{inst.key}' of job '{inst.name}' is already used by another job"
                    )
                seen.add(inst.key)
        self._dependents: Dict[str, List[str]] = {i.key: [] for i in self.instances}
        for inst in self.instances:
            for dep in inst.depends_on:
                self._dependents[dep].append(inst.key)

    # ---- lookup ----

    def __len__(self) -> int:
        return len(self.instances)

    def instance(self, key: str) -> JobInstance:
        return self._by_key[key]

    def instances_of(self, job: str) -> List[JobInstance]:
        return list(self._by_job[job])

    def dependents(self, key: str) -> List[str]:
        return list(self._dependents[key])

    def bind(self, context) -> None:
        """Register every instance (state Pending) in a fresh RunContext."""
        context.register(self.instances)

    # ---- scheduling views ----

    def dependencies_terminal(self, instance: JobInstance, context) -> bool:
        return all(context.status(k).terminal for k in instance.depends_on)

    def unblocked(self, context) -> List[JobInstance]:
        """Waiting instances whose dependencies are all terminal."""
        return [
            inst for inst in self.instances
            if context.status(inst.key) in (Status.PENDING, Status.BLOCKED)
            and self.dependencies_terminal(inst, context)
        ]

    def condition_holds(self, instance: JobInstance, context) -> bool:
        return check_condition(instance.spec.condition, context, instance=instance)

    def ready(self, context) -> List[JobInstance]:
        """
        Instances whose dependencies are terminal and whose condition holds.
        An instance whose condition raises ExpressionError is left out; the
        scheduler fails it when it settles the graph.
        """
        out = []
        for inst in self.instances:
            status = context.status(inst.key)
            if status is Status.READY:
                out.append(inst)
                continue
            if status not in (Status.PENDING, Status.BLOCKED):
                continue
            if not self.dependencies_terminal(inst, context):
                continue
            try:
                if self.condition_holds(inst, context):
                    out.append(inst)
            except ExpressionError:
                continue
        return out

    def is_complete(self, context) -> bool:
        return all(context.status(i.key).terminal for i in self.instances)

    # ---- planning ----

    def levels(self) -> List[List[str]]:
        """
        Topological "levels" (stages) of instance keys.
        Each stage can run in parallel once the previous ones finished.
        """
        indeg = {i.key: len(i.depends_on) for i in self.instances}
        q = deque(i.key for i in self.instances if indeg[i.key] == 0)

        levels: List[List[str]] = []
        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in self._dependents[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)
        return levels
