# tests/test_loader.py
from __future__ import annotations

import json

import pytest

from ciflow.errors import InvalidDefinition, TriggerNotAccepted
from ciflow.loader import load_definition, load_definition_file
from ciflow.model import ConditionKind, PipelineDefinition


@pytest.fixture
def document():
    return {
        "name": "release",
        "env": {"REGISTRY": "ghcr.io"},
        "on": {
            "workflow_dispatch": {
                "inputs": {
                    "environment": {
                        "description": "Target environment",
                        "required": True,
                        "default": "staging",
                        "type": "choice",
                        "options": ["staging", "production"],
                    }
                }
            },
            "push": {"branches": ["main"]},
            "pull_request": None,
            "schedule": [{"cron": "0 3 * * 1"}, "0 4 * * *"],
        },
        "jobs": {
            "initialize": {
                "name": "Initialize Release",
                "outputs": {"release_version": "${{ steps.version.outputs.release_version }}"},
                "steps": [
                    {
                        "id": "version",
                        "run": "echo release_version=v1 >> $CIFLOW_OUTPUT",
                        "outputs": ["release_version"],
                        "env": {"BUMP": "minor"},
                        "working-directory": ".",
                    }
                ],
            },
            "build": {
                "needs": "initialize",
                "matrix": {
                    "platform": ["linux/amd64", "linux/arm64"],
                    "exclude": [{"platform": "linux/arm64"}],
                },
                "steps": [{"uses": "set-output", "with": {"tag": "${{ matrix.platform }}"}, "outputs": ["tag"]}],
            },
            "rollback": {
                "needs": ["initialize", "build"],
                "if": "${{ failure() }}",
                "timeout": 30,
                "steps": [{"name": "Delete tag", "run": "echo delete", "if": "always()", "timeout": 5}],
            },
        },
    }


def test_document_maps_to_definition(document):
    definition = load_definition(document)
    assert isinstance(definition, PipelineDefinition)
    assert definition.job_names == ["initialize", "build", "rollback"]
    assert definition.env["REGISTRY"] == "ghcr.io"

    init = definition.job("initialize")
    assert init.display_name == "Initialize Release"
    step = init.tasks[0]
    assert step.uses == "shell"
    assert step.params["run"].startswith("echo release_version")
    assert step.params["env"] == {"BUMP": "minor"}
    assert step.params["cwd"] == "."
    assert step.outputs == ("release_version",)

    build = definition.job("build")
    assert build.needs == ("initialize",)
    assert build.matrix.names == ["platform"]
    assert build.matrix.is_excluded({"platform": "linux/arm64"})
    assert build.tasks[0].uses == "set-output"
    assert build.tasks[0].params == {"tag": "${{ matrix.platform }}"}

    rollback = definition.job("rollback")
    assert rollback.condition.kind is ConditionKind.ON_FAILURE
    assert rollback.timeout == 30
    assert rollback.tasks[0].condition.kind is ConditionKind.ALWAYS
    assert rollback.tasks[0].timeout == 5


def test_triggers(document):
    triggers = load_definition(document).triggers
    assert triggers.manual
    assert triggers.inputs["environment"].choices == ("staging", "production")
    assert triggers.push == ("main",)
    assert triggers.pull_request == ()
    assert triggers.schedule == ("0 3 * * 1", "0 4 * * *")
    triggers.check_event("pull_request", "feature/x")
    with pytest.raises(TriggerNotAccepted):
        triggers.check_event("push", "develop")


def test_missing_on_defaults_to_manual_only():
    definition = load_definition({"jobs": {"a": {"steps": [{"run": "true"}]}}})
    assert definition.triggers.manual
    assert definition.triggers.push is None
    assert definition.name == "pipeline"


@pytest.mark.parametrize(
    "tree",
    [
        {"jobs": {}},
        {"jobs": {"a": {"steps": []}}},
        {"jobs": {"a": {"steps": [{"run": "x", "uses": "shell"}]}}},
        {"jobs": {"a": {"steps": [{"name": "nothing"}]}}},
        {"jobs": {"a": {"steps": [{"run": "x"}], "runs-on": "ubuntu"}}},
        {"jobs": {"a": {"steps": [{"uses": "set-output", "env": {"A": "1"}}]}}},
        {"jobs": {"a": {"steps": [{"run": "x"}], "matrix": {"os": "linux"}}}},
        {"jobs": {"a": {"steps": [{"run": "x"}]}}, "on": {"manual": {"inputs": {"x": {"type": "date"}}}}},
        {"jobs": {"a": {"steps": [{"run": "x"}]}}, "on": {"manual": {"inputs": {"x": {"type": "choice"}}}}},
        "not a mapping",
    ],
)
def test_invalid_documents(tree):
    with pytest.raises(InvalidDefinition):
        load_definition(tree)


def test_validation_errors_name_the_location():
    with pytest.raises(InvalidDefinition) as exc:
        load_definition({"jobs": {"a": {"steps": [{"run": "x", "timeout": -1}]}}})
    assert "jobs.a.steps.0.timeout" in str(exc.value)


def test_load_json_file(tmp_path, document):
    path = tmp_path / "release.pipeline.json"
    path.write_text(json.dumps(document))
    assert load_definition_file(path).name == "release"


def test_load_python_file(tmp_path):
    path = tmp_path / "ci_pipeline.py"
    path.write_text(
        "from ciflow import define_pipeline, job, sh\n"
        "\n"
        "def pipeline():\n"
        "    return define_pipeline('ci', job('lint', sh('Ruff', 'ruff check .')))\n"
    )
    definition = load_definition_file(path)
    assert definition.name == "ci"
    assert definition.job("lint").tasks[0].params["run"] == "ruff check ."


def test_load_python_file_with_dict(tmp_path):
    path = tmp_path / "dict_pipeline.py"
    path.write_text("PIPELINE = {'name': 'd', 'jobs': {'a': {'steps': [{'run': 'true'}]}}}\n")
    assert load_definition_file(path).name == "d"


def test_python_file_without_pipeline(tmp_path):
    path = tmp_path / "empty_pipeline.py"
    path.write_text("X = 1\n")
    with pytest.raises(InvalidDefinition):
        load_definition_file(path)


def test_bad_json(tmp_path):
    path = tmp_path / "bad.pipeline.json"
    path.write_text("{not json")
    with pytest.raises(InvalidDefinition):
        load_definition_file(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_definition_file(tmp_path / "nope.json")


def test_unsupported_extension(tmp_path):
    path = tmp_path / "pipeline.yaml"
    path.write_text("name: x\n")
    with pytest.raises(InvalidDefinition):
        load_definition_file(path)
