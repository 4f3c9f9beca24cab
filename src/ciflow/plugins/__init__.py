from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping

from ..errors import UnknownTask
from .base import FunctionPlugin, PluginReturn, TaskPlugin
from .set_output import SetOutputPlugin
from .shell import OUTPUT_ENV, ShellPlugin, parse_output_file


class PluginRegistry:
    """Maps task identifiers (`uses`) to plugin factories."""

    def __init__(self) -> None:
        self._factories: Dict[str, Callable[[], TaskPlugin]] = {}

    def register(self, identifier: str, factory: Callable[[], TaskPlugin]) -> None:
        """Register a zero-argument factory (a TaskPlugin subclass works)."""
        self._factories[identifier] = factory

    def register_function(self, identifier: str, fn: Callable[[Mapping[str, Any]], PluginReturn]) -> None:
        self._factories[identifier] = lambda: FunctionPlugin(fn)

    def task(self, identifier: str):
        """Decorator form of register_function."""
        def deco(fn):
            self.register_function(identifier, fn)
            return fn
        return deco

    def create(self, identifier: str) -> TaskPlugin:
        try:
            factory = self._factories[identifier]
        except KeyError:
            raise UnknownTask([identifier], self.names()) from None
        return factory()

    def names(self) -> List[str]:
        return sorted(self._factories)

    def copy(self) -> PluginRegistry:
        clone = PluginRegistry()
        clone._factories = dict(self._factories)
        return clone

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._factories


def default_registry() -> PluginRegistry:
    registry = PluginRegistry()
    registry.register("shell", ShellPlugin)
    registry.register("set-output", SetOutputPlugin)
    return registry


__all__ = [
    "TaskPlugin",
    "FunctionPlugin",
    "PluginRegistry",
    "ShellPlugin",
    "SetOutputPlugin",
    "OUTPUT_ENV",
    "default_registry",
    "parse_output_file",
]
