"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
import threading
from typing import Optional


class Console:
    """All user-facing output of a run: progress lines, failures, plan and results."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Args:
            debug: Also print tracebacks, task logs and [DEBUG] lines
            quiet: Suppress per-job progress; errors and results still print
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def _progress(self, *lines: str) -> None:
        if not self.quiet:
            self._out(*lines)

    def print_run_started(
        self,
        pipeline: str,
        run_id: str,
        job_count: int,
        instance_count: int,
    ) -> None:
        """Banner printed once the graph is built and the run id assigned."""
        self._progress(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Run ID: {run_id}",
            f"Jobs: {job_count} ({instance_count} instances)",
            "",
        )

    def print_job_start(self, key: str) -> None:
        self._progress(f"[{key}] JOB STARTED")

    def print_task(self, key: str, task: str) -> None:
        self._progress(f"[{key}] ▶ {task}")

    def print_task_skipped(self, key: str, task: str) -> None:
        self._progress(f"[{key}] ⏭ {task} (condition false)")

    def print_job_finished(self, key: str, status: str, duration: float) -> None:
        self._progress(f"[{key}] STATUS: {status} ({duration:.1f}s)")

    def print_job_skipped(self, key: str, reason: str) -> None:
        self._progress(f"[{key}] STATUS: skipped ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        is_job: bool = False,
    ) -> None:
        """
        Report a failed job instance (is_job=True) or task.
        Outside debug mode only the first line of `reason` is shown.
        """
        prefix = "JOB FAILED" if is_job else "TASK FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out(*lines)

    def print_logs(self, key: str, logs: str) -> None:
        """Print captured task logs (debug mode only)."""
        if self.debug and logs:
            self._out(*(f"[{key}] | {line}" for line in logs.splitlines()))

    def print_plan(self, pipeline: str, stages: list[list[str]]) -> None:
        """Print execution stages of a pipeline."""
        lines = [f"\nPLAN: {pipeline}"]
        for i, stage in enumerate(stages, start=1):
            lines.append(f"  stage {i}: {', '.join(stage)}")
        self._out(*lines)

    def print_results(self, report) -> None:
        """Per-instance status table followed by the overall outcome."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for inst in report.instances:
            line = f"  {inst.key}: {inst.status.value.upper()}"
            if inst.reason and inst.status.value == "skipped":
                line += f" ({inst.reason})"
            lines.append(line)
        lines.append("-" * 40)
        overall = report.status.value.upper()
        if report.cancelled:
            overall += " (cancelled)"
        lines.append(f"  {report.pipeline}: {overall} in {report.duration:.1f}s")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Structured error block on stderr: title, message, indented details
        and an optional suggestion separated by a blank line.
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Traceback in debug mode, a single line otherwise."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Plain line on stdout, printed even in quiet mode."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """stderr, debug mode only."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# process-wide console; the CLI replaces it via set_console()
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
