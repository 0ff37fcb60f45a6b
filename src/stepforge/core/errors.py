"""Exception hierarchy for workflow definition and execution failures."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    DEFINITION = "definition"
    EXPRESSION = "expression"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    CYCLIC_INVOCATION = "cyclic_invocation"
    MAX_DEPTH = "max_depth"
    CANCELLED = "cancelled"


class WorkflowError(Exception):
    """Base class for failures that end a run with ``status == "failed"``."""

    kind: ErrorKind = ErrorKind.EXECUTION

    def __init__(self, message: str, step_id: str | None = None):
        self.message = message
        self.step_id = step_id
        super().__init__(message)


class DefinitionError(WorkflowError):
    kind = ErrorKind.DEFINITION


class ExpressionError(WorkflowError):
    kind = ErrorKind.EXPRESSION


class StepExecutionError(WorkflowError):
    kind = ErrorKind.EXECUTION


class StepTimeoutError(WorkflowError):
    kind = ErrorKind.TIMEOUT


class CyclicInvocationError(WorkflowError):
    kind = ErrorKind.CYCLIC_INVOCATION


class MaxDepthError(WorkflowError):
    kind = ErrorKind.MAX_DEPTH
