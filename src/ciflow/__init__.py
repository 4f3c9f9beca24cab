from .dsl import (
    always,
    build,
    choice,
    define_pipeline,
    job,
    matrix,
    on_failure,
    on_success,
    param,
    set_output,
    sh,
    task,
    triggers,
    when,
    JobBuilder,
)
from .engine import PipelineEngine
from .loader import load_definition, load_definition_file
from .model import (
    Condition,
    ConditionKind,
    JobSpec,
    Matrix,
    PipelineDefinition,
    Status,
    TaskResult,
    TaskSpec,
    TriggerConfig,
    TriggerInput,
)
from .plugins import PluginRegistry, TaskPlugin, default_registry
from .report import RunReport

__all__ = [
    "always", "build", "choice", "define_pipeline", "job", "matrix", "on_failure",
    "on_success", "param", "set_output", "sh", "task", "triggers", "when", "JobBuilder",
    "PipelineEngine", "load_definition", "load_definition_file",
    "Condition", "ConditionKind", "JobSpec", "Matrix", "PipelineDefinition", "Status",
    "TaskResult", "TaskSpec", "TriggerConfig", "TriggerInput",
    "PluginRegistry", "TaskPlugin", "default_registry", "RunReport",
]
