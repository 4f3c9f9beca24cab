# loader.py
"""
Pipeline definitions from parsed documents (JSON) or Python files.

Document shape (GitHub-Actions-like):

    {
      "name": "release",
      "env": {"REGISTRY": "ghcr.io"},
      "on": {
        "workflow_dispatch": {"inputs": {"environment": {"type": "choice",
                                          "options": ["staging", "production"]}}},
        "push": {"branches": ["main"]}
      },
      "jobs": {
        "build": {"steps": [{"id": "v", "run": "echo version=1.2.3 >> $CIFLOW_OUTPUT",
                             "outputs": ["version"]}]},
        "deploy": {"needs": "build", "if": "success()", "steps": [...]}
      }
    }
"""
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import InvalidDefinition
from .model import (
    Condition,
    JobSpec,
    Matrix,
    PipelineDefinition,
    TaskSpec,
    TriggerConfig,
    TriggerInput,
)


Scalar = Union[str, int, float, bool, None]


# ---------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------

class StepDocument(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Optional[str] = None
    name: Optional[str] = None
    uses: Optional[str] = None
    run: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("working-directory", "working_directory", "cwd")
    )
    outputs: List[str] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _uses_or_run(self) -> StepDocument:
        if (self.uses is None) == (self.run is None):
            raise ValueError("a step needs exactly one of 'uses' or 'run'")
        if self.uses is not None and (self.env or self.working_directory):
            raise ValueError("'env' and 'working-directory' only apply to 'run' steps")
        return self

    def to_domain(self) -> TaskSpec:
        if self.run is not None:
            params: Dict[str, Any] = {"run": self.run, **self.with_}
            if self.env:
                params["env"] = dict(self.env)
            if self.working_directory:
                params["cwd"] = self.working_directory
            uses = "shell"
        else:
            params = dict(self.with_)
            uses = self.uses
        return TaskSpec(
            uses=uses,
            params=params,
            outputs=tuple(self.outputs),
            condition=Condition.parse(self.if_),
            id=self.id,
            name=self.name,
            timeout=self.timeout,
        )


class JobDocument(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    needs: Union[str, List[str]] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    matrix: Optional[Dict[str, Any]] = None
    outputs: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)
    steps: List[StepDocument] = Field(min_length=1)

    def _matrix(self, job: str) -> Optional[Matrix]:
        if not self.matrix:
            return None
        axes = dict(self.matrix)
        exclude = axes.pop("exclude", None) or []
        if not isinstance(exclude, list) or not all(isinstance(e, dict) for e in exclude):
            raise InvalidDefinition(f"Job '{job}' matrix.exclude must be a list of objects")
        for axis, values in axes.items():
            if not isinstance(values, list):
                raise InvalidDefinition(f"Job '{job}' matrix axis '{axis}' must be a list")
        return Matrix.of(axes, exclude=exclude)

    def to_domain(self, key: str) -> JobSpec:
        needs = [self.needs] if isinstance(self.needs, str) else list(self.needs)
        return JobSpec(
            name=key,
            tasks=tuple(step.to_domain() for step in self.steps),
            needs=tuple(needs),
            matrix=self._matrix(key),
            condition=Condition.parse(self.if_),
            outputs=dict(self.outputs),
            timeout=self.timeout,
            display_name=self.name,
        )


class InputDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = ""
    required: bool = False
    default: Scalar = None
    type: str = "string"
    options: List[Scalar] = Field(
        default_factory=list, validation_alias=AliasChoices("options", "choices")
    )

    def to_domain(self, name: str) -> TriggerInput:
        return TriggerInput(
            name=name,
            description=self.description,
            required=self.required,
            default=self.default,
            type=self.type,
            choices=tuple(self.options),
        )


class ManualDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    inputs: Dict[str, InputDocument] = Field(default_factory=dict)


class BranchFilterDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    branches: List[str] = Field(default_factory=list)


class CronDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cron: str


class TriggerDocument(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    manual: Optional[ManualDocument] = Field(
        default=None, validation_alias=AliasChoices("manual", "workflow_dispatch")
    )
    push: Optional[BranchFilterDocument] = None
    pull_request: Optional[BranchFilterDocument] = None
    schedule: List[Union[str, CronDocument]] = Field(default_factory=list)

    def _branches(self, name: str) -> Optional[tuple]:
        # present but empty (`"push": null`) means any branch
        if name not in self.model_fields_set:
            return None
        doc = getattr(self, name)
        return tuple(doc.branches) if doc is not None else ()

    def to_domain(self) -> TriggerConfig:
        manual = self.manual or ManualDocument()
        return TriggerConfig(
            inputs={k: v.to_domain(k) for k, v in manual.inputs.items()},
            manual="manual" in self.model_fields_set,
            push=self._branches("push"),
            pull_request=self._branches("pull_request"),
            schedule=tuple(s if isinstance(s, str) else s.cron for s in self.schedule),
        )


class PipelineDocument(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = "pipeline"
    env: Dict[str, Scalar] = Field(default_factory=dict)
    on: Optional[TriggerDocument] = None
    jobs: Dict[str, JobDocument] = Field(min_length=1)

    def to_domain(self) -> PipelineDefinition:
        return PipelineDefinition(
            name=self.name,
            jobs=tuple(doc.to_domain(key) for key, doc in self.jobs.items()),
            triggers=self.on.to_domain() if self.on is not None else TriggerConfig(),
            env=dict(self.env),
        )


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def _format_validation_error(err: ValidationError) -> str:
    lines = []
    for e in err.errors():
        where = ".".join(str(p) for p in e["loc"]) or "<root>"
        lines.append(f"{where}: {e['msg']}")
    return "Invalid pipeline definition:\n  " + "\n  ".join(lines)


def load_definition(tree: Any) -> PipelineDefinition:
    """Validate a parsed document tree and build a PipelineDefinition."""
    try:
        doc = PipelineDocument.model_validate(tree)
    except ValidationError as e:
        raise InvalidDefinition(_format_validation_error(e)) from e
    try:
        return doc.to_domain()
    except ValueError as e:
        # TriggerInput rejects unknown types / empty choices
        raise InvalidDefinition(str(e)) from e


def load_definition_file(path: Union[str, Path]) -> PipelineDefinition:
    """
    Load a pipeline from a file.

    Supported:
      - *.json: a document (see module docstring)
      - *.py:   defines pipeline() -> PipelineDefinition | dict,
                or PIPELINE = PipelineDefinition | dict
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    if p.suffix == ".json":
        try:
            tree = json.loads(p.read_text())
        except json.JSONDecodeError as e:
            raise InvalidDefinition(f"{p.name}: invalid JSON ({e})") from e
        return load_definition(tree)

    if p.suffix != ".py":
        raise InvalidDefinition(f"Pipeline must be a .json or .py file, got: {p.name}")

    globals_dict = runpy.run_path(str(p), run_name=f"ciflow_pipeline_{p.stem}")
    if "PIPELINE" in globals_dict:
        value = globals_dict["PIPELINE"]
    elif "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        value = globals_dict["pipeline"]()
    else:
        raise InvalidDefinition(
            f"{p.name} must define pipeline() -> PipelineDefinition or PIPELINE = ..."
        )

    if isinstance(value, PipelineDefinition):
        return value
    if isinstance(value, dict):
        return load_definition(value)
    raise InvalidDefinition(
        f"{p.name}: expected a PipelineDefinition or a dict, got {type(value).__name__}"
    )
