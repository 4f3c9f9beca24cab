# tests/conftest.py
"""
Shared fixtures: an in-memory plugin registry whose plugins record what
they were asked to do, and a quiet engine factory. No fixture touches
the network; only the shell plugin tests spawn processes.
"""
from __future__ import annotations

import threading
import time

import pytest

from ciflow.config import Settings
from ciflow.engine import PipelineEngine
from ciflow.model import Status, TaskResult
from ciflow.plugins import PluginRegistry, TaskPlugin, default_registry
from ciflow.ui.console import Console


class Recorder:
    """Thread-safe log of executed task labels and their resolved params."""

    def __init__(self):
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def enter(self, label, params):
        with self._lock:
            self.calls.append((label, dict(params)))
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def leave(self):
        with self._lock:
            self.active -= 1

    @property
    def labels(self):
        with self._lock:
            return [label for label, _ in self.calls]

    def params_of(self, label):
        for name, params in self.calls:
            if name == label:
                return params
        raise KeyError(label)


class RecordingPlugin(TaskPlugin):
    """
    Params:
      label:    recorded name (defaults to the task label)
      outputs:  mapping returned as task outputs
      fail:     report failure (exit code 1)
      raise:    raise RuntimeError with this message
      sleep:    seconds to block (interrupted by cancel())
      barrier:  threading.Barrier to wait on
      call:     zero-argument callable invoked during execution
    """

    def __init__(self, recorder):
        self.recorder = recorder
        self._stop = threading.Event()

    def execute(self, name, params):
        label = params.get("label", name)
        self.recorder.enter(label, params)
        try:
            if params.get("call") is not None:
                params["call"]()
            if params.get("barrier") is not None:
                params["barrier"].wait()
            if params.get("sleep"):
                self._stop.wait(params["sleep"])
            if params.get("raise"):
                raise RuntimeError(params["raise"])
            if params.get("fail"):
                return {"status": "failure", "exit_code": 1, "logs": f"{label} failed"}
            return TaskResult(status=Status.SUCCEEDED, outputs=dict(params.get("outputs") or {}))
        finally:
            self.recorder.leave()

    def cancel(self):
        self._stop.set()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def registry(recorder):
    reg = default_registry()
    reg.register("record", lambda: RecordingPlugin(recorder))
    return reg


@pytest.fixture
def quiet_console():
    return Console(quiet=True)


@pytest.fixture
def make_engine(registry, quiet_console):
    """Factory: make_engine(definition, max_workers=4, task_timeout=None)."""

    def _make(definition, *, max_workers=4, task_timeout=None, registry_override=None):
        return PipelineEngine(
            definition,
            registry=registry_override or registry,
            settings=Settings(max_workers=max_workers, task_timeout=task_timeout, poll_interval=0.01),
            console=quiet_console,
        )

    return _make


@pytest.fixture
def run_pipeline(make_engine):
    """Run a definition and return the RunReport."""

    def _run(definition, inputs=None, **kwargs):
        event = kwargs.pop("event", None)
        ref = kwargs.pop("ref", None)
        return make_engine(definition, **kwargs).run(inputs, event=event, ref=ref)

    return _run


@pytest.fixture
def wait_until():
    def _wait(predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return False

    return _wait
