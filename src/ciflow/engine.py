# engine.py
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from .config import Settings
from .context import RunContext
from .dag import JobGraph
from .errors import UnknownTask
from .model import PipelineDefinition
from .plugins import PluginRegistry, default_registry
from .report import RunReport, build_report
from .runner import Scheduler
from .tasks import TaskRunner
from .ui.console import Console, get_console


class PipelineEngine:
    """
    Entry point for running a PipelineDefinition.

        engine = PipelineEngine(definition)
        report = engine.run({"environment": "staging"})

    Every structural problem (graph or trigger) is raised before any job
    is scheduled. Task failures never raise: they are in the report.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        *,
        registry: Optional[PluginRegistry] = None,
        settings: Optional[Settings] = None,
        console: Optional[Console] = None,
    ):
        self.definition = definition
        self.registry = registry if registry is not None else default_registry()
        self.settings = settings or Settings()
        self.console = console or get_console()
        self._cancel = threading.Event()
        self._lock = threading.Lock()

    def validate(self) -> JobGraph:
        """Build the job graph and check every task identifier is registered."""
        graph = JobGraph(self.definition)
        unknown = []
        for spec in self.definition.jobs:
            for task in spec.tasks:
                if task.uses not in self.registry and task.uses not in unknown:
                    unknown.append(task.uses)
        if unknown:
            raise UnknownTask(unknown, self.registry.names())
        return graph

    def run(
        self,
        inputs: Optional[Mapping[str, Any]] = None,
        *,
        event: Optional[str] = None,
        ref: Optional[str] = None,
    ) -> RunReport:
        # a cancel() that arrives before scheduling starts still applies to this run
        with self._lock:
            cancel_event = self._cancel
        try:
            return self._run(inputs, event, ref, cancel_event)
        finally:
            with self._lock:
                self._cancel = threading.Event()

    def _run(
        self,
        inputs: Optional[Mapping[str, Any]],
        event: Optional[str],
        ref: Optional[str],
        cancel_event: threading.Event,
    ) -> RunReport:
        triggers = self.definition.triggers
        if event is not None:
            triggers.check_event(event, ref)
        resolved = triggers.resolve_inputs(inputs)
        graph = self.validate()

        context = RunContext(resolved, self.definition.env, cancel_event=cancel_event)
        graph.bind(context)

        self.console.print_run_started(
            pipeline=self.definition.name,
            run_id=context.run_id,
            job_count=len(self.definition.jobs),
            instance_count=len(graph),
        )
        self.console.print_debug(f"inputs: {resolved}")

        started_at = datetime.now(timezone.utc)
        scheduler = Scheduler(
            graph,
            TaskRunner(
                self.registry,
                default_timeout=self.settings.task_timeout,
                poll_interval=self.settings.poll_interval,
            ),
            max_workers=self.settings.resolved_workers,
            poll_interval=self.settings.poll_interval,
            console=self.console,
        )
        scheduler.run(context)
        finished_at = datetime.now(timezone.utc)

        report = build_report(self.definition, graph, context, started_at, finished_at)
        self.console.print_results(report)
        return report

    def cancel(self) -> None:
        """Request cancellation of the current run, or of the next one if none is running yet (safe from any thread)."""
        with self._lock:
            self._cancel.set()
