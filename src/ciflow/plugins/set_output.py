# plugins/set_output.py
from __future__ import annotations

from typing import Any, Mapping

from ..model import Status, TaskResult, format_value
from .base import TaskPlugin


class SetOutputPlugin(TaskPlugin):
    """Publishes every param as a task output (after template resolution)."""

    def execute(self, name: str, params: Mapping[str, Any]) -> TaskResult:
        outputs = dict(params)
        logs = "\n".join(f"{k}={format_value(v)}" for k, v in outputs.items())
        return TaskResult(status=Status.SUCCEEDED, outputs=outputs, logs=logs)
