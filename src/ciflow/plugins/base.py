# plugins/base.py
from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Union

from ..model import TaskResult


PluginReturn = Union[TaskResult, Mapping[str, Any], None]


class TaskPlugin:
    """
    Contract for every concrete action (image build, package publish,
    vulnerability scan, notification, rollback, ...).

    execute(name, params) returns a TaskResult or a mapping with
    `status`, `outputs` and `logs`. Raising an exception fails the task.
    A fresh plugin object is created for each task execution, so
    implementations may keep per-execution state (e.g. a child process).
    """

    def execute(self, name: str, params: Mapping[str, Any]) -> PluginReturn:
        raise NotImplementedError

    def cancel(self) -> None:
        """Best-effort cancellation of an in-flight execute()."""


class FunctionPlugin(TaskPlugin):
    """Adapts a plain callable `fn(params)` to the plugin contract."""

    def __init__(self, fn: Callable[[Mapping[str, Any]], PluginReturn], on_cancel: Optional[Callable[[], None]] = None):
        self.fn = fn
        self.on_cancel = on_cancel

    def execute(self, name: str, params: Mapping[str, Any]) -> PluginReturn:
        return self.fn(params)

    def cancel(self) -> None:
        if self.on_cancel is not None:
            self.on_cancel()
