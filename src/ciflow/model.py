# model.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import (
    InvalidTriggerInput,
    MissingTriggerInput,
    TriggerNotAccepted,
    UnknownTriggerInput,
)


SCALAR_TYPES = (str, int, float, bool, type(None))


class Status(str, Enum):
    """Lifecycle state of a job instance (and outcome of a single task)."""
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (Status.SUCCEEDED, Status.FAILED, Status.SKIPPED)

    @property
    def result(self) -> Optional[str]:
        """Name used by `needs.<job>.result` / `steps.<id>.outcome`."""
        return _RESULT_NAMES.get(self)


_RESULT_NAMES = {
    Status.SUCCEEDED: "success",
    Status.FAILED: "failure",
    Status.SKIPPED: "skipped",
}

ALLOWED_TRANSITIONS: Dict[Status, Tuple[Status, ...]] = {
    Status.PENDING: (Status.BLOCKED, Status.SKIPPED),
    Status.BLOCKED: (Status.READY, Status.SKIPPED, Status.FAILED),
    Status.READY: (Status.RUNNING, Status.SKIPPED),
    Status.RUNNING: (Status.SUCCEEDED, Status.FAILED),
}


# ---------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------

class ConditionKind(str, Enum):
    ALWAYS = "always"
    ON_SUCCESS = "success"
    ON_FAILURE = "failure"
    CUSTOM = "custom"


_TEMPLATE_WRAPPER = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.S)
_TAGGED = {
    "always()": ConditionKind.ALWAYS,
    "success()": ConditionKind.ON_SUCCESS,
    "failure()": ConditionKind.ON_FAILURE,
}


def unwrap_expression(text: str) -> str:
    """Strip an optional `${{ ... }}` wrapper."""
    m = _TEMPLATE_WRAPPER.match(text)
    return (m.group(1) if m else text).strip()


@dataclass(frozen=True)
class Condition:
    """Guarding condition of a job or task. Default: all dependencies succeeded."""
    kind: ConditionKind = ConditionKind.ON_SUCCESS
    expr: Optional[str] = None

    @classmethod
    def parse(cls, text: Optional[str]) -> Condition:
        if text is None or not str(text).strip():
            return cls()
        body = unwrap_expression(str(text))
        kind = _TAGGED.get(body.replace(" ", ""))
        if kind is not None:
            return cls(kind=kind)
        return cls(kind=ConditionKind.CUSTOM, expr=body)

    @classmethod
    def coerce(cls, value: Any) -> Condition:
        if isinstance(value, Condition):
            return value
        return cls.parse(value)

    @property
    def expression(self) -> str:
        if self.kind is ConditionKind.CUSTOM:
            return self.expr or "success()"
        return f"{self.kind.value}()"

    def __str__(self) -> str:
        return self.expression


# ---------------------------------------------------------------------
# Tasks and jobs
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TaskSpec:
    """A single opaque action inside a job, executed through a task plugin."""
    uses: str
    params: Mapping[str, Any] = field(default_factory=dict)
    outputs: Tuple[str, ...] = ()
    condition: Condition = field(default_factory=Condition)
    id: Optional[str] = None
    name: Optional[str] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        object.__setattr__(self, "condition", Condition.coerce(self.condition))

    @property
    def label(self) -> str:
        return self.name or self.id or self.uses


@dataclass(frozen=True)
class Matrix:
    """
    Named axes of values, expanded into the cartesian product of job instances.

    Example:
        Matrix.of({"platform": ["amd64", "arm64"], "py": ["3.11", "3.12"]})
    """
    axes: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    exclude: Tuple[Tuple[Tuple[str, Any], ...], ...] = ()

    @classmethod
    def of(
        cls,
        axes: Optional[Mapping[str, Iterable[Any]]] = None,
        exclude: Iterable[Mapping[str, Any]] = (),
        **more_axes: Iterable[Any],
    ) -> Matrix:
        merged: Dict[str, Iterable[Any]] = dict(axes or {})
        merged.update(more_axes)
        return cls(
            axes=tuple((k, tuple(v)) for k, v in merged.items()),
            exclude=tuple(tuple(e.items()) for e in exclude),
        )

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.axes]

    def values(self, axis: str) -> Tuple[Any, ...]:
        return dict(self.axes)[axis]

    def excluding(self, **coordinate: Any) -> Matrix:
        return Matrix(axes=self.axes, exclude=self.exclude + (tuple(coordinate.items()),))

    def is_excluded(self, coordinate: Mapping[str, Any]) -> bool:
        return any(
            all(k in coordinate and coordinate[k] == v for k, v in ex)
            for ex in self.exclude
        )


@dataclass(frozen=True)
class JobSpec:
    """
    A declared job: tasks + dependencies + matrix + guarding condition.

    `outputs` maps job output names to expressions over the job's tasks
    (e.g. {"version": "${{ steps.version.outputs.version }}"}). When empty,
    the job publishes the declared outputs of its tasks.
    """
    name: str
    tasks: Tuple[TaskSpec, ...]
    needs: Tuple[str, ...] = ()
    matrix: Optional[Matrix] = None
    condition: Condition = field(default_factory=Condition)
    outputs: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    display_name: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tasks", tuple(self.tasks))
        object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "outputs", MappingProxyType(dict(self.outputs)))
        object.__setattr__(self, "condition", Condition.coerce(self.condition))

    def output_names(self) -> List[str]:
        if self.outputs:
            return list(self.outputs)
        names: List[str] = []
        for task in self.tasks:
            for key in task.outputs:
                if key not in names:
                    names.append(key)
        return names

    @property
    def required(self) -> bool:
        """Jobs gated by always() do not decide the overall run status."""
        return self.condition.kind is not ConditionKind.ALWAYS


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

INPUT_TYPES = ("string", "choice", "boolean", "number")


@dataclass(frozen=True)
class TriggerInput:
    name: str
    description: str = ""
    required: bool = False
    default: Any = None
    type: str = "string"
    choices: Tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "choices", tuple(self.choices))
        if self.type not in INPUT_TYPES:
            raise ValueError(f"Input '{self.name}' has unknown type {self.type!r}")
        if self.type == "choice" and not self.choices:
            raise ValueError(f"Choice input '{self.name}' declares no options")

    def coerce(self, value: Any) -> Any:
        if self.type == "boolean":
            value = self._as_bool(value)
        elif self.type == "number":
            value = self._as_number(value)
        elif self.type == "string" and not isinstance(value, str):
            value = str(value)

        if self.choices:
            for option in self.choices:
                if option == value or str(option) == str(value):
                    return option
            raise InvalidTriggerInput(
                f"Input '{self.name}' got {value!r}; allowed: {list(self.choices)}"
            )
        return value

    def _as_bool(self, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "1", "yes", "on"):
            return True
        if text in ("false", "0", "no", "off"):
            return False
        raise InvalidTriggerInput(f"Input '{self.name}' expects a boolean, got {value!r}")

    def _as_number(self, value: Any) -> Any:
        if isinstance(value, bool):
            raise InvalidTriggerInput(f"Input '{self.name}' expects a number, got {value!r}")
        if isinstance(value, (int, float)):
            return value
        try:
            return int(str(value))
        except ValueError:
            pass
        try:
            return float(str(value))
        except ValueError:
            raise InvalidTriggerInput(
                f"Input '{self.name}' expects a number, got {value!r}"
            ) from None


def _branch_matches(patterns: Tuple[str, ...], ref: Optional[str]) -> bool:
    if not patterns:
        return True
    if ref is None:
        return False
    branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
    return any(fnmatch(branch, p) for p in patterns)


@dataclass(frozen=True)
class TriggerConfig:
    """
    Which events start the pipeline, and the manual inputs it accepts.

    push / pull_request: None = event not configured, () = any branch.
    """
    inputs: Mapping[str, TriggerInput] = field(default_factory=dict)
    manual: bool = True
    push: Optional[Tuple[str, ...]] = None
    pull_request: Optional[Tuple[str, ...]] = None
    schedule: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", MappingProxyType(dict(self.inputs)))
        object.__setattr__(self, "schedule", tuple(self.schedule))
        if self.push is not None:
            object.__setattr__(self, "push", tuple(self.push))
        if self.pull_request is not None:
            object.__setattr__(self, "pull_request", tuple(self.pull_request))

    def check_event(self, event: str, ref: Optional[str] = None) -> None:
        if event == "manual":
            accepted = self.manual
        elif event == "push":
            accepted = self.push is not None and _branch_matches(self.push, ref)
        elif event == "pull_request":
            accepted = self.pull_request is not None and _branch_matches(self.pull_request, ref)
        elif event == "schedule":
            accepted = bool(self.schedule)
        else:
            accepted = False
        if not accepted:
            where = f" on {ref}" if ref else ""
            raise TriggerNotAccepted(f"Pipeline does not run on '{event}'{where}")

    def resolve_inputs(self, supplied: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Validate supplied values against the declared inputs and apply defaults."""
        supplied = dict(supplied or {})
        unknown = sorted(set(supplied) - set(self.inputs))
        if unknown:
            raise UnknownTriggerInput(
                f"Unknown input(s) {unknown}. Declared: {sorted(self.inputs)}"
            )

        resolved: Dict[str, Any] = {}
        for name, spec in self.inputs.items():
            value = supplied.get(name)
            if value is None:
                value = spec.default
            if value is None:
                if spec.required:
                    raise MissingTriggerInput(f"Input '{name}' is required")
                resolved[name] = None
                continue
            resolved[name] = spec.coerce(value)
        return resolved


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Tuple[JobSpec, ...]
    triggers: TriggerConfig = field(default_factory=TriggerConfig)
    env: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def job(self, name: str) -> JobSpec:
        for spec in self.jobs:
            if spec.name == name:
                return spec
        raise KeyError(name)

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]


# ---------------------------------------------------------------------
# Runtime values
# ---------------------------------------------------------------------

def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class JobInstance:
    """One concrete run of a JobSpec, identified by (job name, matrix coordinate)."""
    name: str
    coordinate: Tuple[Tuple[str, Any], ...] = ()
    spec: Optional[JobSpec] = field(default=None, compare=False, repr=False)
    depends_on: Tuple[str, ...] = field(default=(), compare=False)
    key: str = field(init=False, compare=False)

    def __post_init__(self) -> None:
        if self.coordinate:
            label = ", ".join(format_value(v) for _, v in self.coordinate)
            key = f"{self.name} ({label})"
        else:
            key = self.name
        object.__setattr__(self, "key", key)

    @property
    def matrix(self) -> Dict[str, Any]:
        return dict(self.coordinate)


@dataclass
class TaskResult:
    """Structured result of one task: status, outputs, logs."""
    status: Status
    outputs: Dict[str, Any] = field(default_factory=dict)
    logs: str = ""
    exit_code: Optional[int] = None
    error: Optional[Exception] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is Status.SUCCEEDED

    @classmethod
    def failure(cls, error: Exception, logs: str = "", exit_code: Optional[int] = None) -> TaskResult:
        return cls(status=Status.FAILED, logs=logs, error=error, exit_code=exit_code)

    @classmethod
    def skipped(cls) -> TaskResult:
        return cls(status=Status.SKIPPED)

    @classmethod
    def from_value(cls, value: Any) -> TaskResult:
        """Accept a TaskResult, None (success), or a {status, outputs, logs} mapping."""
        if isinstance(value, TaskResult):
            return value
        if value is None:
            return cls(status=Status.SUCCEEDED)
        if not isinstance(value, Mapping):
            raise TypeError(
                f"Task plugins must return a TaskResult or a mapping, got {type(value).__name__}"
            )

        exit_code = value.get("exit_code")
        raw = value.get("status")
        if raw is None:
            status = Status.SUCCEEDED if not exit_code else Status.FAILED
        else:
            status = _status_from(raw)
        return cls(
            status=status,
            outputs=dict(value.get("outputs") or {}),
            logs=str(value.get("logs") or ""),
            exit_code=exit_code,
        )


def _status_from(raw: Any) -> Status:
    if isinstance(raw, Status):
        return raw
    if isinstance(raw, bool):
        return Status.SUCCEEDED if raw else Status.FAILED
    if isinstance(raw, int):
        return Status.SUCCEEDED if raw == 0 else Status.FAILED
    text = str(raw).strip().lower()
    if text in ("success", "succeeded", "ok", "passed"):
        return Status.SUCCEEDED
    if text == "skipped":
        return Status.SKIPPED
    return Status.FAILED
