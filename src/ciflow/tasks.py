# tasks.py
from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional

from .errors import (
    ExpressionError,
    MissingDeclaredOutput,
    NonZeroStatus,
    PipelineError,
    TaskCancelled,
    TaskExecutionError,
    TaskTimeout,
)
from .expr import check_condition, interpolate
from .model import JobInstance, Status, TaskResult, TaskSpec
from .plugins import PluginRegistry, default_registry


def _min_timeout(*values: Optional[float]) -> Optional[float]:
    present = [v for v in values if v is not None]
    return min(present) if present else None


class TaskRunner:
    """
    Executes one TaskSpec through its plugin.

    The plugin runs on a worker thread so the runner can enforce a timeout
    and react to run cancellation while it waits. A plugin never sees the
    RunContext, only its resolved params.
    """

    def __init__(
        self,
        registry: Optional[PluginRegistry] = None,
        *,
        default_timeout: Optional[float] = None,
        poll_interval: float = 0.05,
    ):
        self.registry = registry if registry is not None else default_registry()
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    def execute(
        self,
        task: TaskSpec,
        context,
        *,
        instance: Optional[JobInstance] = None,
        job=None,
        timeout: Optional[float] = None,
    ) -> TaskResult:
        started = time.monotonic()
        result = self._execute(task, context, instance=instance, job=job, timeout=timeout)
        result.duration = time.monotonic() - started
        return result

    def _execute(self, task, context, *, instance, job, timeout) -> TaskResult:
        if instance is None and job is not None:
            instance = job.instance
        job_name = instance.key if instance is not None else None

        # ---- gate ----
        try:
            if not check_condition(task.condition, context, instance=instance, job=job):
                return TaskResult.skipped()
        except ExpressionError as e:
            return TaskResult.failure(e)

        # ---- params ----
        try:
            params: Dict[str, Any] = interpolate(dict(task.params), context, instance=instance, job=job)
        except ExpressionError as e:
            return TaskResult.failure(e)

        plugin = self.registry.create(task.uses)
        limit = _min_timeout(
            task.timeout if task.timeout is not None else self.default_timeout,
            timeout,
        )

        # ---- run ----
        box: Dict[str, Any] = {}

        def target() -> None:
            try:
                box["value"] = plugin.execute(task.label, params)
            except Exception as e:  # reported as the task failure below
                box["error"] = e

        worker = threading.Thread(target=target, name=f"ciflow-task-{task.label}", daemon=True)
        worker.start()
        deadline = None if limit is None else time.monotonic() + limit

        while True:
            worker.join(self.poll_interval)
            if not worker.is_alive():
                break
            if deadline is not None and time.monotonic() >= deadline:
                plugin.cancel()
                return TaskResult.failure(
                    TaskTimeout(
                        f"Task exceeded its {limit:g}s timeout",
                        job=job_name,
                        task=task.label,
                        details={"timeout": limit},
                    )
                )
            if context.cancelled:
                plugin.cancel()
                return TaskResult.failure(
                    TaskCancelled("Run was cancelled", job=job_name, task=task.label)
                )

        return self._finish(task, box, job_name)

    def _finish(self, task: TaskSpec, box: Dict[str, Any], job_name: Optional[str]) -> TaskResult:
        error = box.get("error")
        if error is not None:
            if not isinstance(error, PipelineError):
                error = TaskExecutionError(
                    f"{type(error).__name__}: {error}", job=job_name, task=task.label
                )
            return TaskResult.failure(error)

        try:
            result = TaskResult.from_value(box.get("value"))
        except TypeError as e:
            return TaskResult.failure(TaskExecutionError(str(e), job=job_name, task=task.label))

        if result.status is Status.FAILED:
            if result.error is None:
                details = {"exit_code": result.exit_code} if result.exit_code is not None else {}
                result.error = NonZeroStatus(
                    "Task reported failure", job=job_name, task=task.label, details=details
                )
            return result

        if result.status is Status.SUCCEEDED:
            missing: List[str] = [k for k in task.outputs if k not in result.outputs]
            if missing:
                return TaskResult.failure(
                    MissingDeclaredOutput(
                        f"Task did not produce declared output(s) {missing}",
                        job=job_name,
                        task=task.label,
                        details={"produced": sorted(result.outputs)},
                    ),
                    logs=result.logs,
                    exit_code=result.exit_code,
                )
        return result
