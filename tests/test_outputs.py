# tests/test_outputs.py
from __future__ import annotations

import threading

import pytest

from ciflow.context import RunContext
from ciflow.errors import DuplicateOutput, InvalidTransition, MissingOutput
from ciflow.model import JobInstance, Status
from ciflow.outputs import OutputStore


def test_set_and_get():
    store = OutputStore()
    store.set("build", "version", "1.2.3")
    assert store.get("build", "version") == "1.2.3"
    assert store.has("build", "version")
    assert "build" in store


def test_outputs_are_write_once():
    store = OutputStore()
    store.set("build", "version", "1")
    with pytest.raises(DuplicateOutput) as exc:
        store.set("build", "version", "2")
    assert exc.value.key == "version"
    assert store.get("build", "version") == "1"


def test_missing_output():
    store = OutputStore()
    with pytest.raises(MissingOutput):
        store.get("build", "version")


def test_set_many_is_all_or_nothing():
    store = OutputStore()
    store.set("build", "a", 1)
    with pytest.raises(DuplicateOutput):
        store.set_many("build", {"b": 2, "a": 3})
    assert not store.has("build", "b")
    assert store.outputs_of("build") == {"a": 1}


def test_snapshot_is_a_copy():
    store = OutputStore()
    store.set("build", "a", 1)
    snap = store.snapshot()
    snap["build"]["a"] = 99
    assert store.get("build", "a") == 1


def test_concurrent_writers():
    store = OutputStore()

    def write(n):
        for i in range(100):
            store.set(f"job-{n}", f"k{i}", i)

    threads = [threading.Thread(target=write, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert all(len(store.outputs_of(f"job-{n}")) == 100 for n in range(8))


def test_terminal_states_cannot_be_left():
    ctx = RunContext()
    ctx.register([JobInstance(name="build")])
    for s in (Status.BLOCKED, Status.READY, Status.RUNNING, Status.SUCCEEDED):
        ctx.set_status("build", s)
    with pytest.raises(InvalidTransition):
        ctx.set_status("build", Status.RUNNING)


def test_pending_cannot_jump_to_running():
    ctx = RunContext()
    ctx.register([JobInstance(name="build")])
    with pytest.raises(InvalidTransition):
        ctx.set_status("build", Status.RUNNING)
