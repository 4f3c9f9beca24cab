# runner.py
from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Dict, Optional

from .config import default_workers
from .context import JobExecution, JobOutcome, RunContext
from .dag import JobGraph
from .errors import ExpressionError, TaskCancelled
from .expr import check_condition, interpolate
from .model import JobInstance, Status, TaskResult
from .tasks import TaskRunner
from .ui.console import Console, get_console


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """
    Drives one run of a JobGraph to completion.

    Only the scheduling thread mutates the RunContext. Jobs run on a
    bounded thread pool and hand back a JobOutcome, which is applied
    (outputs first, then status) before the next scheduling pass.
    """

    def __init__(
        self,
        graph: JobGraph,
        task_runner: Optional[TaskRunner] = None,
        *,
        max_workers: Optional[int] = None,
        poll_interval: float = 0.05,
        console: Optional[Console] = None,
    ):
        self.graph = graph
        self.task_runner = task_runner or TaskRunner()
        self.max_workers = max_workers or default_workers()
        self.poll_interval = poll_interval
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self, context: RunContext) -> None:
        for inst in self.graph.instances:
            if context.status(inst.key) is Status.PENDING:
                context.set_status(inst.key, Status.BLOCKED)

        in_flight: Dict[Future, JobInstance] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ciflow-job") as pool:
            while True:
                if context.cancelled:
                    self._skip_waiting(context, "run cancelled")
                else:
                    self._settle(context)

                # dispatch ready instances, in topological order
                for inst in self.graph.instances:
                    if len(in_flight) >= self.max_workers:
                        break
                    if context.status(inst.key) is not Status.READY:
                        continue
                    context.set_status(inst.key, Status.RUNNING)
                    self.console.print_job_start(inst.key)
                    in_flight[pool.submit(self._execute, inst, context)] = inst

                if not in_flight:
                    if not self.graph.is_complete(context):
                        # nothing running and nothing can start
                        self._skip_waiting(context, "dependencies can never complete")
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for fut in done:
                    inst = in_flight.pop(fut)
                    outcome = fut.result()
                    context.apply(outcome)
                    self._report(outcome)

    def _settle(self, context: RunContext) -> None:
        """
        One topological pass over waiting instances: every instance whose
        dependencies are terminal becomes Ready, Skipped or Failed. Skips
        cascade within the pass because dependents come later in the order.
        """
        for inst in self.graph.instances:
            if context.status(inst.key) not in (Status.PENDING, Status.BLOCKED):
                continue
            if not self.graph.dependencies_terminal(inst, context):
                continue
            try:
                holds = check_condition(inst.spec.condition, context, instance=inst)
            except ExpressionError as e:
                context.fail(inst.key, e)
                self.console.print_failure(inst.key, str(e), is_job=True)
                continue
            if holds:
                context.set_status(inst.key, Status.READY)
            else:
                reason = f"condition '{inst.spec.condition}' is false"
                context.skip(inst.key, reason)
                self.console.print_job_skipped(inst.key, reason)

    def _skip_waiting(self, context: RunContext, reason: str) -> None:
        for inst in self.graph.instances:
            if context.status(inst.key) in (Status.PENDING, Status.BLOCKED, Status.READY):
                context.skip(inst.key, reason)
                self.console.print_job_skipped(inst.key, reason)

    def _report(self, outcome: JobOutcome) -> None:
        if outcome.status is Status.FAILED:
            exit_code = None
            for _task, result in outcome.tasks:
                if result.status is Status.FAILED:
                    exit_code = result.exit_code
                    break
            self.console.print_failure(outcome.key, outcome.reason or "", exit_code=exit_code, is_job=True)
            self.console.print_logs(outcome.key, outcome.logs)
        self.console.print_job_finished(outcome.key, outcome.status.value, outcome.duration)

    # ------------------------------------------------------------------
    # Job execution (worker thread)
    # ------------------------------------------------------------------

    def _execute(self, inst: JobInstance, context: RunContext) -> JobOutcome:
        started_at = _now()
        t0 = time.monotonic()
        execution = JobExecution(inst)
        try:
            outputs = self._run_tasks(inst, execution, context, t0)
            status = Status.FAILED if execution.failed else Status.SUCCEEDED
            error = execution.error
        except Exception as e:  # reported as the job failure
            outputs, status, error = {}, Status.FAILED, e

        return JobOutcome(
            key=inst.key,
            status=status,
            outputs=outputs,
            logs=execution.logs,
            error=error,
            reason=str(error) if error is not None else None,
            started_at=started_at,
            finished_at=_now(),
            duration=time.monotonic() - t0,
            tasks=list(execution.results),
        )

    def _run_tasks(self, inst: JobInstance, execution: JobExecution, context: RunContext, t0: float):
        spec = inst.spec
        for task in spec.tasks:
            if context.cancelled:
                execution.record(
                    task,
                    TaskResult.failure(TaskCancelled("Run was cancelled", job=inst.key, task=task.label)),
                )
                break

            remaining = None
            if spec.timeout is not None:
                remaining = max(0.0, spec.timeout - (time.monotonic() - t0))

            self.console.print_task(inst.key, task.label)
            result = self.task_runner.execute(
                task, context, instance=inst, job=execution, timeout=remaining
            )
            execution.record(task, result)
            if result.status is Status.SKIPPED:
                self.console.print_task_skipped(inst.key, task.label)
            elif result.status is Status.FAILED:
                self.console.print_failure(
                    task.label, str(result.error or "task failed"), exit_code=result.exit_code
                )

        if execution.failed:
            return {}
        if spec.outputs:
            return interpolate(dict(spec.outputs), context, instance=inst, job=execution)
        return {k: execution.outputs[k] for k in spec.output_names() if k in execution.outputs}
