from __future__ import annotations

from typing import List, Optional, Sequence


class WorkflowError(Exception):
    """Base class for workflow-layer exceptions.

    Every exception class carries a stable ``error_code`` so callers (CLI
    output, test harnesses, publish gates) can branch without parsing
    messages:
    - validation_error: the document is malformed or inconsistent
    - cyclic_dependency: step expressions reference each other in a cycle
    - expression_error: a template fragment cannot be parsed
    - step_failed: a tool invocation failed
    - tool_input_error: a tool rejected its resolved inputs
    - security_policy: audit findings crossed the caller's threshold
    - context_write: a context slot was written twice
    """

    error_code: str = "workflow_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(WorkflowError):
    """Workflow definition failed validation; nothing was executed."""

    error_code = "validation_error"

    def __init__(
        self,
        message: str,
        errors: Optional[Sequence[str]] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.errors: List[str] = list(errors or [message])
        super().__init__(message, detail={"errors": self.errors, **(detail or {})})


class CyclicDependencyError(ValidationError):
    """Step expressions form a dependency cycle."""

    error_code = "cyclic_dependency"

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle: List[str] = list(cycle)
        message = f"Circular dependency: {' -> '.join(self.cycle)}"
        super().__init__(message, [message], detail={"cycle": self.cycle})


class SecurityPolicyError(ValidationError):
    """Audit findings at or above the caller's blocking severity."""

    error_code = "security_policy"


class ExpressionResolutionError(WorkflowError):
    """A template expression could not be evaluated."""

    error_code = "expression_error"


class ExpressionSyntaxError(ExpressionResolutionError):
    """A template expression is not valid syntax."""

    def __init__(self, message: str, expression: str = "") -> None:
        super().__init__(message, detail={"expression": expression})
        self.expression = expression


class StepExecutionError(WorkflowError):
    """A step's tool invocation failed."""

    error_code = "step_failed"

    def __init__(self, step_id: str, message: str, *, tool: Optional[str] = None) -> None:
        super().__init__(message, detail={"step_id": step_id, "tool": tool})
        self.step_id = step_id
        self.tool = tool


class ToolInputError(WorkflowError):
    """A tool received inputs it cannot work with."""

    error_code = "tool_input_error"


class ContextWriteError(WorkflowError):
    """A step output slot in the execution context was written twice."""

    error_code = "context_write"


__all__ = [
    "WorkflowError",
    "ValidationError",
    "CyclicDependencyError",
    "SecurityPolicyError",
    "ExpressionResolutionError",
    "ExpressionSyntaxError",
    "StepExecutionError",
    "ToolInputError",
    "ContextWriteError",
]
