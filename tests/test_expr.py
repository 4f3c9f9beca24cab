# tests/test_expr.py
from __future__ import annotations

import pytest

from ciflow.context import JobExecution, RunContext
from ciflow.dag import JobGraph
from ciflow.dsl import always, define_pipeline, job, matrix, on_failure, task
from ciflow.errors import ExpressionSyntaxError, PendingReference, UnresolvedReference
from ciflow.expr import check_condition, evaluate, interpolate, references, template_expressions
from ciflow.model import Condition, ConditionKind, Status, TaskResult


@pytest.fixture
def ctx():
    return RunContext(inputs={"environment": "Production", "dry_run": False, "count": 3}, env={"REGION": "eu"})


def _finish(ctx, key, status):
    ctx.set_status(key, Status.BLOCKED)
    ctx.set_status(key, Status.READY)
    if status is not Status.SKIPPED:
        ctx.set_status(key, Status.RUNNING)
    ctx.set_status(key, status)


@pytest.fixture
def bound():
    """A build -> deploy -> rollback graph bound to a fresh context."""
    g = JobGraph(
        define_pipeline(
            "p",
            job("build", task("record", "b", outputs=["version"]), matrix=matrix(os=["linux", "mac"])),
            job("deploy", task("record", "d"), needs="build"),
            job("rollback", task("record", "r"), needs="deploy", if_=on_failure()),
        )
    )
    c = RunContext(inputs={}, env={})
    g.bind(c)
    return g, c


# -----------------------------------------------------------------
# Literals and operators
# -----------------------------------------------------------------

@pytest.mark.parametrize(
    "expression, expected",
    [
        ("1 == 1", True),
        ("'abc' == 'ABC'", True),
        ("'a' != 'b'", True),
        ("2 < 10", True),
        ("'10' == 10", True),
        ("true && 'yes'", "yes"),
        ("false || 'fallback'", "fallback"),
        ("!false", True),
        ("null == ''", True),
        ("(1 == 1) && (2 == 3)", False),
        ("'it''s'", "it's"),
        ("1.5 > 1", True),
    ],
)
def test_literals_and_operators(ctx, expression, expected):
    assert evaluate(expression, ctx) == expected


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("contains('Hello World', 'world')", True),
        ("startsWith('refs/heads/main', 'refs/heads/')", True),
        ("endsWith('image.tar.gz', '.zip')", False),
        ("format('v{0}-{1}', 1, 'rc')", "v1-rc"),
    ],
)
def test_functions(ctx, expression, expected):
    assert evaluate(expression, ctx) == expected


def test_template_wrapper_is_optional(ctx):
    assert evaluate("${{ inputs.count }}", ctx) == 3
    assert evaluate("inputs.count", ctx) == 3


def test_inputs_and_env(ctx):
    assert evaluate("inputs.environment == 'production'", ctx) is True
    assert evaluate("env.REGION", ctx) == "eu"


@pytest.mark.parametrize("expression", ["inputs.missing", "env.MISSING", "github.ref", "matrix.os"])
def test_unresolved_references(ctx, expression):
    with pytest.raises(UnresolvedReference):
        evaluate(expression, ctx)


@pytest.mark.parametrize("expression", ["", "1 ==", "(true", "inputs.", "a b", "'open", "nope()"])
def test_syntax_errors(ctx, expression):
    with pytest.raises(ExpressionSyntaxError):
        evaluate(expression, ctx)


def test_references_are_listed_in_source_order():
    refs = references("needs.build.result == 'success' && inputs.env != env.X")
    assert refs == [("needs", "build", "result"), ("inputs", "env"), ("env", "X")]


def test_template_expressions_are_found_in_nested_params():
    value = {"a": "x ${{ inputs.one }} y", "b": ["${{ env.TWO }}", 3]}
    assert template_expressions(value) == ["inputs.one", "env.TWO"]


# -----------------------------------------------------------------
# Interpolation
# -----------------------------------------------------------------

def test_whole_template_keeps_scalar_type(ctx):
    assert interpolate("${{ inputs.count }}", ctx) == 3
    assert interpolate("${{ inputs.dry_run }}", ctx) is False


def test_embedded_templates_are_spliced_as_text(ctx):
    assert interpolate("deploy-${{ inputs.environment }}-${{ inputs.dry_run }}", ctx) == "deploy-Production-false"


def test_interpolation_recurses_into_containers(ctx):
    out = interpolate({"args": ["--region", "${{ env.REGION }}"], "n": 1}, ctx)
    assert out == {"args": ["--region", "eu"], "n": 1}


# -----------------------------------------------------------------
# Status functions and needs
# -----------------------------------------------------------------

def test_needs_on_unfinished_job_is_pending(bound):
    g, c = bound
    with pytest.raises(PendingReference):
        evaluate("needs.build.result", c, instance=g.instance("deploy"))


def test_matrix_job_result_aggregates_instances(bound):
    g, c = bound
    _finish(c, "build (linux)", Status.SUCCEEDED)
    _finish(c, "build (mac)", Status.FAILED)
    deploy = g.instance("deploy")
    assert evaluate("needs.build.result", c, instance=deploy) == "failure"
    assert check_condition(Condition(), c, instance=deploy) is False
    assert check_condition(always(), c, instance=deploy) is True


def test_failure_sees_transitive_ancestors(bound):
    g, c = bound
    _finish(c, "build (linux)", Status.FAILED)
    _finish(c, "build (mac)", Status.SUCCEEDED)
    _finish(c, "deploy", Status.SKIPPED)
    rollback = g.instance("rollback")
    assert evaluate("failure()", c, instance=rollback) is True
    assert check_condition(rollback.spec.condition, c, instance=rollback) is True


def test_success_requires_succeeded_dependencies(bound):
    g, c = bound
    _finish(c, "build (linux)", Status.SUCCEEDED)
    _finish(c, "build (mac)", Status.SUCCEEDED)
    _finish(c, "deploy", Status.SKIPPED)
    rollback = g.instance("rollback")
    assert evaluate("success()", c, instance=rollback) is False
    assert evaluate("failure()", c, instance=rollback) is False


def test_declared_but_unproduced_output_is_null(bound):
    g, c = bound
    _finish(c, "build (linux)", Status.FAILED)
    _finish(c, "build (mac)", Status.FAILED)
    assert evaluate("needs.build.outputs.version", c, instance=g.instance("deploy")) is None


def test_matrix_output_takes_last_instance(bound):
    g, c = bound
    for key, version in (("build (linux)", "1"), ("build (mac)", "2")):
        c.outputs.set_many(key, {"version": version})
        _finish(c, key, Status.SUCCEEDED)
    assert evaluate("needs.build.outputs.version", c, instance=g.instance("deploy")) == "2"


def test_custom_condition_implies_success(bound):
    g, c = bound
    _finish(c, "build (linux)", Status.FAILED)
    _finish(c, "build (mac)", Status.SUCCEEDED)
    deploy = g.instance("deploy")
    assert check_condition("needs.build.result != 'skipped'", c, instance=deploy) is False
    assert check_condition("always() && needs.build.result == 'failure'", c, instance=deploy) is True


def test_cancelled_function(ctx):
    assert evaluate("cancelled()", ctx) is False
    ctx.cancel()
    assert evaluate("cancelled()", ctx) is True
    assert check_condition(Condition(), ctx) is False
    assert check_condition(always(), ctx) is True


def test_task_level_status_and_steps(bound):
    g, c = bound
    inst = g.instance("deploy")
    execution = JobExecution(inst)
    spec = inst.spec
    execution.record(spec.tasks[0], TaskResult(status=Status.FAILED))
    assert evaluate("failure()", c, job=execution) is True
    assert evaluate("success()", c, job=execution) is False
    assert evaluate("job.status", c, job=execution) == "failure"


def test_steps_outputs(ctx):
    g = JobGraph(
        define_pipeline("p", job("j", task("record", "a", id="meta", outputs=["tag"]), task("record", "b")))
    )
    g.bind(ctx)
    inst = g.instance("j")
    execution = JobExecution(inst)
    execution.record(inst.spec.tasks[0], TaskResult(status=Status.SUCCEEDED, outputs={"tag": "v1"}))
    assert evaluate("steps.meta.outputs.tag", ctx, job=execution) == "v1"
    assert evaluate("steps.meta.outcome", ctx, job=execution) == "success"
    with pytest.raises(UnresolvedReference):
        evaluate("steps.other.outcome", ctx, job=execution)


@pytest.mark.parametrize(
    "text, kind",
    [
        (None, ConditionKind.ON_SUCCESS),
        ("always()", ConditionKind.ALWAYS),
        ("${{ failure() }}", ConditionKind.ON_FAILURE),
        ("success( )", ConditionKind.ON_SUCCESS),
        ("inputs.x == 'y'", ConditionKind.CUSTOM),
    ],
)
def test_condition_parsing(text, kind):
    assert Condition.parse(text).kind is kind
