# context.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import InvalidTransition
from .model import ALLOWED_TRANSITIONS, JobInstance, Status, TaskResult, TaskSpec
from .outputs import OutputStore


def aggregate_status(statuses: Iterable[Status]) -> Status:
    """
    Job-level status of a (possibly matrix-expanded) job:
      - FAILED if any instance failed
      - still in progress if any instance is not terminal
      - SKIPPED if every instance was skipped
      - SUCCEEDED otherwise
    """
    statuses = list(statuses)
    if not statuses:
        return Status.SKIPPED
    if Status.FAILED in statuses:
        return Status.FAILED
    if any(not s.terminal for s in statuses):
        return Status.RUNNING if Status.RUNNING in statuses else Status.PENDING
    if all(s is Status.SKIPPED for s in statuses):
        return Status.SKIPPED
    return Status.SUCCEEDED


@dataclass
class JobOutcome:
    """What happened to one job instance. Applied to the RunContext by the scheduler."""
    key: str
    status: Status
    outputs: Dict[str, Any] = field(default_factory=dict)
    logs: str = ""
    error: Optional[Exception] = None
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration: float = 0.0
    tasks: List[Tuple[TaskSpec, TaskResult]] = field(default_factory=list)


class JobExecution:
    """Mutable state of one running job instance: its sequential task results."""

    def __init__(self, instance: JobInstance):
        self.instance = instance
        self.results: List[Tuple[TaskSpec, TaskResult]] = []
        self.steps: Dict[str, Dict[str, Any]] = {}
        self.outputs: Dict[str, Any] = {}
        self.failed = False

    def record(self, task: TaskSpec, result: TaskResult) -> None:
        self.results.append((task, result))
        if result.status is Status.FAILED:
            self.failed = True
        elif result.status is Status.SUCCEEDED:
            self.outputs.update(result.outputs)
        if task.id:
            self.steps[task.id] = {
                "outcome": result.status.result,
                "outputs": dict(result.outputs),
            }

    @property
    def error(self) -> Optional[Exception]:
        for _task, result in self.results:
            if result.status is Status.FAILED:
                return result.error
        return None

    @property
    def logs(self) -> str:
        chunks = []
        for task, result in self.results:
            if result.logs:
                chunks.append(f"--- {task.label} ---\n{result.logs.rstrip()}")
        return "\n".join(chunks)


class RunContext:
    """
    Mutable state of exactly one pipeline run.

    Holds trigger inputs, pipeline env, the output store and the status of
    every job instance. Only the scheduler mutates it; task plugins never see it.
    """

    def __init__(
        self,
        inputs: Optional[Mapping[str, Any]] = None,
        env: Optional[Mapping[str, Any]] = None,
        *,
        run_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.inputs: Dict[str, Any] = dict(inputs or {})
        self.env: Dict[str, Any] = dict(env or {})
        self.outputs = OutputStore()
        self.outcomes: Dict[str, JobOutcome] = {}
        self._statuses: Dict[str, Status] = {}
        self._instances: Dict[str, JobInstance] = {}
        self._jobs: Dict[str, List[str]] = {}
        self._ancestors: Dict[str, Set[str]] = {}
        self._cancel = cancel_event or threading.Event()
        self._lock = threading.RLock()

    # ---- instances ----

    def register(self, instances: Iterable[JobInstance]) -> None:
        with self._lock:
            for inst in instances:
                self._instances[inst.key] = inst
                self._statuses[inst.key] = Status.PENDING
                self._jobs.setdefault(inst.name, []).append(inst.key)

    def instance(self, key: str) -> JobInstance:
        return self._instances[key]

    def instances_of(self, job: str) -> List[JobInstance]:
        return [self._instances[k] for k in self._jobs.get(job, [])]

    def has_job(self, job: str) -> bool:
        return job in self._jobs

    @property
    def keys(self) -> List[str]:
        return list(self._instances)

    # ---- statuses ----

    def status(self, key: str) -> Status:
        return self._statuses[key]

    def statuses(self) -> Dict[str, Status]:
        with self._lock:
            return dict(self._statuses)

    def set_status(self, key: str, status: Status) -> None:
        with self._lock:
            current = self._statuses[key]
            if current is status:
                return
            if status not in ALLOWED_TRANSITIONS.get(current, ()):
                raise InvalidTransition(f"{key}: {current.value} -> {status.value}")
            self._statuses[key] = status

    def job_status(self, job: str) -> Status:
        return aggregate_status(self._statuses[k] for k in self._jobs.get(job, []))

    def job_terminal(self, job: str) -> bool:
        return all(self._statuses[k].terminal for k in self._jobs.get(job, []))

    def job_output(self, job: str, key: str) -> Any:
        """
        Output `key` of `job`, or None when no instance produced it.
        Matrix jobs: the last instance (coordinate order) that produced it wins.
        """
        value = None
        for inst_key in self._jobs.get(job, []):
            if self.outputs.has(inst_key, key):
                value = self.outputs.get(inst_key, key)
        return value

    # ---- dependency views used by status functions ----

    def ancestors(self, key: str) -> Set[str]:
        cached = self._ancestors.get(key)
        if cached is not None:
            return cached
        seen: Set[str] = set()
        stack = list(self._instances[key].depends_on)
        while stack:
            k = stack.pop()
            if k in seen:
                continue
            seen.add(k)
            stack.extend(self._instances[k].depends_on)
        self._ancestors[key] = seen
        return seen

    def dependencies_succeeded(self, instance: JobInstance) -> bool:
        return all(self._statuses[k] is Status.SUCCEEDED for k in instance.depends_on)

    def ancestor_failed(self, instance: JobInstance) -> bool:
        return any(self._statuses[k] is Status.FAILED for k in self.ancestors(instance.key))

    # ---- results (scheduler only) ----

    def apply(self, outcome: JobOutcome) -> None:
        """Record a finished instance: outputs first, then the terminal status."""
        with self._lock:
            if outcome.status is Status.SUCCEEDED and outcome.outputs:
                self.outputs.set_many(outcome.key, outcome.outputs)
            self.set_status(outcome.key, outcome.status)
            self.outcomes[outcome.key] = outcome

    def skip(self, key: str, reason: str) -> None:
        self.apply(JobOutcome(key=key, status=Status.SKIPPED, reason=reason))

    def fail(self, key: str, error: Exception) -> None:
        self.apply(JobOutcome(key=key, status=Status.FAILED, error=error, reason=str(error)))

    # ---- cancellation ----

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel
