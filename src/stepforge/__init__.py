"""StepForge — declarative workflow execution with suspension and resume."""

from stepforge.core.engine import WorkflowEngine, execute_workflow_definition, run_workflow
from stepforge.core.definition import Step, WorkflowDefinition
from stepforge.core.context import ExecutionContext
from stepforge.core.result import ExecutionResult, ResumeInput, RunStatus, StepError, SuspensionState
from stepforge.core.errors import ErrorKind, WorkflowError
from stepforge.core.executors import ExecutorRegistry
from stepforge.core.project import Project
from stepforge.tools.base import Tool, tool
from stepforge._version import __version__

__all__ = [
    "WorkflowEngine",
    "execute_workflow_definition",
    "run_workflow",
    "Step",
    "WorkflowDefinition",
    "ExecutionContext",
    "ExecutionResult",
    "ResumeInput",
    "RunStatus",
    "StepError",
    "SuspensionState",
    "ErrorKind",
    "WorkflowError",
    "ExecutorRegistry",
    "Project",
    "Tool",
    "tool",
    "__version__",
]
