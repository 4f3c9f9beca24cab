# report.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .context import RunContext, aggregate_status
from .errors import TaskExecutionError
from .model import JobInstance, PipelineDefinition, Status, format_value


def _error_dict(error: Optional[Exception]) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    if isinstance(error, TaskExecutionError):
        return error.to_dict()
    return {"kind": type(error).__name__, "message": str(error)}


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


@dataclass
class TaskReport:
    label: str
    uses: str
    status: Status
    outputs: Dict[str, Any] = field(default_factory=dict)
    exit_code: Optional[int] = None
    duration: float = 0.0
    error: Optional[Exception] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.label,
            "uses": self.uses,
            "status": self.status.value,
            "outputs": dict(self.outputs),
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "error": _error_dict(self.error),
        }


@dataclass
class InstanceReport:
    job: str
    key: str
    matrix: Dict[str, Any]
    status: Status
    outputs: Dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[Exception] = None
    reason: Optional[str] = None
    tasks: List[TaskReport] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "key": self.key,
            "matrix": dict(self.matrix),
            "status": self.status.value,
            "outputs": dict(self.outputs),
            "duration": round(self.duration, 3),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "error": _error_dict(self.error),
            "reason": self.reason,
            "tasks": [t.to_dict() for t in self.tasks],
        }


@dataclass
class RunReport:
    """Final, fully terminal record of one pipeline run."""
    pipeline: str
    run_id: str
    status: Status
    started_at: datetime
    finished_at: datetime
    cancelled: bool = False
    instances: List[InstanceReport] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def ok(self) -> bool:
        return self.status is Status.SUCCEEDED

    def instance(self, key: str) -> InstanceReport:
        for inst in self.instances:
            if inst.key == key:
                return inst
        raise KeyError(key)

    def instances_of(self, job: str) -> List[InstanceReport]:
        return [i for i in self.instances if i.job == job]

    def job_status(self, job: str) -> Status:
        """Aggregate status of a job across its matrix instances."""
        reports = self.instances_of(job)
        if not reports:
            raise KeyError(job)
        return aggregate_status(i.status for i in reports)

    def job_statuses(self) -> Dict[str, Status]:
        out: Dict[str, Status] = {}
        for inst in self.instances:
            if inst.job not in out:
                out[inst.job] = self.job_status(inst.job)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "run_id": self.run_id,
            "status": self.status.value,
            "cancelled": self.cancelled,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration": round(self.duration, 3),
            "jobs": {name: status.value for name, status in self.job_statuses().items()},
            "instances": [i.to_dict() for i in self.instances],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=format_value)


def overall_status(instances: List[JobInstance], statuses: Dict[str, Status]) -> Status:
    """
    Failed iff some required instance failed. Instances gated by always()
    (cleanup, notifications) never decide the outcome on their own.
    """
    for inst in instances:
        if statuses[inst.key] is Status.FAILED and inst.spec.required:
            return Status.FAILED
    return Status.SUCCEEDED


def build_report(
    definition: PipelineDefinition,
    graph,
    context: RunContext,
    started_at: datetime,
    finished_at: datetime,
) -> RunReport:
    statuses = context.statuses()
    instances: List[InstanceReport] = []
    for inst in graph.instances:
        status = statuses[inst.key]
        if not status.terminal:
            raise RuntimeError(f"Run finished with non-terminal instance {inst.key} ({status.value})")
        outcome = context.outcomes.get(inst.key)
        tasks = []
        if outcome is not None:
            for task, result in outcome.tasks:
                tasks.append(
                    TaskReport(
                        label=task.label,
                        uses=task.uses,
                        status=result.status,
                        outputs=dict(result.outputs),
                        exit_code=result.exit_code,
                        duration=result.duration,
                        error=result.error,
                    )
                )
        instances.append(
            InstanceReport(
                job=inst.name,
                key=inst.key,
                matrix=inst.matrix,
                status=status,
                outputs=context.outputs.outputs_of(inst.key),
                duration=outcome.duration if outcome else 0.0,
                started_at=outcome.started_at if outcome else None,
                finished_at=outcome.finished_at if outcome else None,
                error=outcome.error if outcome else None,
                reason=outcome.reason if outcome else None,
                tasks=tasks,
            )
        )

    return RunReport(
        pipeline=definition.name,
        run_id=context.run_id,
        status=overall_status(graph.instances, statuses),
        started_at=started_at,
        finished_at=finished_at,
        cancelled=context.cancelled,
        instances=instances,
    )
