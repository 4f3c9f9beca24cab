# src/ciflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import (
    Condition,
    ConditionKind,
    JobSpec,
    Matrix,
    PipelineDefinition,
    TaskSpec,
    TriggerConfig,
    TriggerInput,
)


ConditionLike = Union[Condition, str, None]


# ---------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------

def always() -> Condition:
    """Run regardless of upstream results (cleanup, notifications)."""
    return Condition(kind=ConditionKind.ALWAYS)


def on_success() -> Condition:
    return Condition(kind=ConditionKind.ON_SUCCESS)


def on_failure() -> Condition:
    """Run only when something upstream failed (compensation, rollback)."""
    return Condition(kind=ConditionKind.ON_FAILURE)


def when(expr: str) -> Condition:
    return Condition.parse(expr)


# ---------------------------------------------------------------------
# Task helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    outputs: Sequence[str] = (),
    if_: ConditionLike = None,
    timeout: float | None = None,
) -> TaskSpec:
    """Create a shell task. Outputs are written as key=value lines to $CIFLOW_OUTPUT."""
    params: Dict[str, Any] = {"run": cmd}
    if cwd is not None:
        params["cwd"] = cwd
    if env:
        params["env"] = dict(env)
    return TaskSpec(
        uses="shell",
        params=params,
        outputs=tuple(outputs),
        condition=Condition.coerce(if_),
        id=id,
        name=name,
        timeout=timeout,
    )


def task(
    uses: str,
    name: str | None = None,
    *,
    id: str | None = None,
    with_: Optional[Mapping[str, Any]] = None,
    outputs: Sequence[str] = (),
    if_: ConditionLike = None,
    timeout: float | None = None,
) -> TaskSpec:
    """Create a task executed by the plugin registered as `uses`."""
    return TaskSpec(
        uses=uses,
        params=dict(with_ or {}),
        outputs=tuple(outputs),
        condition=Condition.coerce(if_),
        id=id,
        name=name,
        timeout=timeout,
    )


def set_output(name: str, *, id: str | None = None, if_: ConditionLike = None, **values: Any) -> TaskSpec:
    """Publish `values` (templates allowed) as outputs of a task."""
    return TaskSpec(
        uses="set-output",
        params=values,
        outputs=tuple(values),
        condition=Condition.coerce(if_),
        id=id,
        name=name,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def matrix(
    axes: Optional[Mapping[str, Iterable[Any]]] = None,
    *,
    exclude: Iterable[Mapping[str, Any]] = (),
    **more_axes: Iterable[Any],
) -> Matrix:
    """
    Matrix of named axes.

    Example:
        matrix(platform=["amd64", "arm64"], py=["3.11", "3.12"],
               exclude=[{"platform": "arm64", "py": "3.11"}])
    """
    return Matrix.of(axes, exclude=exclude, **more_axes)


def job(
    name: str,
    *tasks: TaskSpec,  # allow: job("x", sh(...), sh(...))
    tasks_list: Optional[List[TaskSpec]] = None,
    needs: Union[str, Sequence[str], None] = None,
    if_: ConditionLike = None,
    matrix: Optional[Matrix] = None,
    outputs: Optional[Mapping[str, str]] = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to shell tasks missing one
    display_name: str | None = None,
) -> JobSpec:
    tasks_final: List[TaskSpec] = []
    if tasks_list:
        tasks_final.extend(tasks_list)
    tasks_final.extend(tasks)

    if not tasks_final:
        raise ValueError(f"job({name!r}) must have at least one task")

    if cwd is not None:
        tasks_final = [
            t if t.uses != "shell" or "cwd" in t.params else replace(t, params={**t.params, "cwd": cwd})
            for t in tasks_final
        ]

    if isinstance(needs, str):
        needs = [needs]

    return JobSpec(
        name=name,
        tasks=tuple(tasks_final),
        needs=tuple(needs or ()),
        matrix=matrix,
        condition=Condition.coerce(if_),
        outputs=dict(outputs or {}),
        timeout=timeout,
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._tasks: list[TaskSpec] = []
        self._condition: Condition = Condition()
        self._axes: dict[str, list[Any]] = {}
        self._exclude: list[dict[str, Any]] = []
        self._outputs: dict[str, str] = {}
        self._timeout: float | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs: Any):
        self._tasks.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def define_task(self, spec: TaskSpec):
        self._tasks.append(spec)
        return self

    def when(self, condition: ConditionLike):
        self._condition = Condition.coerce(condition)
        return self

    def with_matrix(self, **axes: Iterable[Any]):
        self._axes.update({k: list(v) for k, v in axes.items()})
        return self

    def excluding(self, **coordinate: Any):
        self._exclude.append(coordinate)
        return self

    def with_outputs(self, **outputs: str):
        self._outputs.update(outputs)
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> JobSpec:
        if not self._tasks:
            raise ValueError(f"Job '{self.name}' has no tasks")
        return JobSpec(
            name=self.name,
            tasks=tuple(self._tasks),
            needs=tuple(self._needs),
            matrix=Matrix.of(self._axes, exclude=self._exclude) if self._axes else None,
            condition=self._condition,
            outputs=dict(self._outputs),
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def param(
    name: str,
    *,
    description: str = "",
    required: bool = False,
    default: Any = None,
    type: str = "string",
) -> TriggerInput:
    return TriggerInput(name=name, description=description, required=required, default=default, type=type)


def choice(
    name: str,
    *options: Any,
    description: str = "",
    required: bool = False,
    default: Any = None,
) -> TriggerInput:
    return TriggerInput(
        name=name,
        description=description,
        required=required,
        default=default,
        type="choice",
        choices=options,
    )


def triggers(
    *inputs: TriggerInput,
    manual: bool = True,
    push: Optional[Sequence[str]] = None,
    pull_request: Optional[Sequence[str]] = None,
    schedule: Sequence[str] = (),
) -> TriggerConfig:
    """
    push / pull_request: branch patterns (fnmatch); [] means any branch,
    None means the event does not start the pipeline.
    """
    return TriggerConfig(
        inputs={i.name: i for i in inputs},
        manual=manual,
        push=tuple(push) if push is not None else None,
        pull_request=tuple(pull_request) if pull_request is not None else None,
        schedule=tuple(schedule),
    )


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def define_pipeline(
    name: str,
    *jobs: JobSpec,
    on: Optional[TriggerConfig] = None,
    env: Optional[Mapping[str, Any]] = None,
) -> PipelineDefinition:
    """
    Pipeline definition helper. Named so a pipeline file can still define
    its own `pipeline()` function:

        from ciflow import define_pipeline, job, sh

        def pipeline():
            return define_pipeline("ci", job(...), job(...))

    Or assign it directly:
        PIPELINE = define_pipeline("ci", job(...), job(...))
    """
    return PipelineDefinition(
        name=name,
        jobs=tuple(jobs),
        triggers=on if on is not None else TriggerConfig(),
        env=dict(env or {}),
    )
