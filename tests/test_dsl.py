# tests/test_dsl.py
from __future__ import annotations

import pytest

from ciflow.dsl import (
    always,
    build,
    choice,
    define_pipeline,
    job,
    matrix,
    on_failure,
    set_output,
    sh,
    task,
    triggers,
    when,
)
from ciflow.model import ConditionKind


def test_job_builder_chain():
    spec = (
        build("test")
        .depends_on("lint", "build")
        .define_step("Unit tests", "pytest -q", cwd="backend", env={"CI": "1"})
        .define_task(task("set-output", id="meta", with_={"suite": "unit"}, outputs=["suite"]))
        .when(always())
        .with_matrix(py=("3.11", "3.12"), os=["linux"])
        .excluding(py="3.11", os="linux")
        .with_outputs(suite="${{ steps.meta.outputs.suite }}")
        .with_timeout(600)
        .build()
    )
    assert spec.needs == ("lint", "build")
    assert [t.label for t in spec.tasks] == ["Unit tests", "meta"]
    assert spec.tasks[0].params == {"run": "pytest -q", "cwd": "backend", "env": {"CI": "1"}}
    assert spec.condition.kind is ConditionKind.ALWAYS
    assert spec.matrix.names == ["py", "os"]
    assert spec.matrix.values("py") == ("3.11", "3.12")
    assert spec.matrix.is_excluded({"py": "3.11", "os": "linux"})
    assert spec.output_names() == ["suite"]
    assert spec.timeout == 600
    assert not spec.required


def test_builder_without_tasks():
    with pytest.raises(ValueError):
        build("empty").depends_on("x").build()


def test_job_helper():
    spec = job(
        "deploy",
        sh("Deploy", "make deploy"),
        needs="build",
        if_="inputs.environment == 'production'",
        matrix=matrix(region=["eu", "us"], exclude=[{"region": "us"}]),
        display_name="Deploy",
    )
    assert spec.needs == ("build",)
    assert spec.condition.kind is ConditionKind.CUSTOM
    assert spec.matrix.is_excluded({"region": "us"})
    assert spec.required
    with pytest.raises(ValueError):
        job("nothing")


def test_conditions():
    assert on_failure().kind is ConditionKind.ON_FAILURE
    assert when("${{ failure() }}").kind is ConditionKind.ON_FAILURE
    assert when("always()").kind is ConditionKind.ALWAYS


def test_set_output_declares_its_keys():
    spec = set_output("Channel", id="channel", release_channel="stable", tag="v1")
    assert spec.uses == "set-output"
    assert spec.outputs == ("release_channel", "tag")
    assert spec.params == {"release_channel": "stable", "tag": "v1"}


def test_define_pipeline_with_triggers():
    definition = define_pipeline(
        "release",
        job("a", sh("A", "true")),
        on=triggers(choice("environment", "staging", "production", default="staging"), push=["main"]),
        env={"REGISTRY": "ghcr.io"},
    )
    assert definition.job_names == ["a"]
    assert definition.triggers.inputs["environment"].choices == ("staging", "production")
    assert definition.triggers.push == ("main",)
    assert definition.triggers.manual
    assert definition.env == {"REGISTRY": "ghcr.io"}
