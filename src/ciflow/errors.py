# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    """Base class for every error raised by ciflow."""


# ----------------------------------------------------------------------
# Graph construction (fatal, the run never starts)
# ----------------------------------------------------------------------

class GraphConstructionError(PipelineError):
    pass


class InvalidDefinition(GraphConstructionError):
    pass


class DuplicateJob(GraphConstructionError):
    pass


class UnknownDependency(GraphConstructionError):
    def __init__(self, job: str, dependency: str, known: List[str]):
        self.job = job
        self.dependency = dependency
        super().__init__(
            f"Job '{job}' needs missing job '{dependency}'. Known jobs: {sorted(known)}"
        )


class CyclicDependency(GraphConstructionError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class InvalidMatrix(GraphConstructionError):
    pass


class UndeclaredReference(GraphConstructionError):
    pass


class UnknownTask(GraphConstructionError):
    def __init__(self, identifiers: List[str], known: List[str]):
        self.identifiers = list(identifiers)
        super().__init__(
            f"Unknown task identifier(s): {self.identifiers}. Registered: {sorted(known)}"
        )


# ----------------------------------------------------------------------
# Trigger validation (fatal, the run never starts)
# ----------------------------------------------------------------------

class TriggerValidationError(PipelineError):
    pass


class InvalidTriggerInput(TriggerValidationError):
    pass


class MissingTriggerInput(TriggerValidationError):
    pass


class UnknownTriggerInput(TriggerValidationError):
    pass


class TriggerNotAccepted(TriggerValidationError):
    pass


# ----------------------------------------------------------------------
# Expressions (fatal to the evaluating job only)
# ----------------------------------------------------------------------

class ExpressionError(PipelineError):
    def __init__(self, message: str, expression: Optional[str] = None):
        self.expression = expression
        if expression is not None:
            message = f"{message} (in '{expression}')"
        super().__init__(message)


class ExpressionSyntaxError(ExpressionError):
    pass


class UnresolvedReference(ExpressionError):
    pass


class PendingReference(ExpressionError):
    pass


# ----------------------------------------------------------------------
# Output store
# ----------------------------------------------------------------------

class OutputError(PipelineError):
    pass


class DuplicateOutput(OutputError):
    def __init__(self, job: str, key: str):
        self.job = job
        self.key = key
        super().__init__(f"Output '{key}' of '{job}' was already written")


class MissingOutput(OutputError):
    def __init__(self, job: str, key: str):
        self.job = job
        self.key = key
        super().__init__(f"Output '{key}' of '{job}' is not set")


# ----------------------------------------------------------------------
# Task execution (the job fails, siblings keep running)
# ----------------------------------------------------------------------

class TaskExecutionError(PipelineError):
    """
    Structured task failure with enough context for:
      - clean CLI output
      - the run report
      - debugging without full tracebacks
    """
    kind = "task_failed"

    def __init__(
        self,
        message: str,
        *,
        job: Optional[str] = None,
        task: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.job = job
        self.task = task
        self.details = dict(details or {})
        super().__init__(message)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.task:
            lines.append(f"task={self.task}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "job": self.job,
            "task": self.task,
            "details": dict(self.details),
        }


class NonZeroStatus(TaskExecutionError):
    kind = "nonzero_status"


class TaskTimeout(TaskExecutionError):
    kind = "timeout"


class MissingDeclaredOutput(TaskExecutionError):
    kind = "missing_declared_output"


class TaskCancelled(TaskExecutionError):
    kind = "cancelled"


# ----------------------------------------------------------------------
# Misc
# ----------------------------------------------------------------------

class InvalidTransition(PipelineError):
    pass


class ConfigError(PipelineError):
    pass
