"""Result data classes for workflow execution."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from stepforge.core.errors import ErrorKind


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SUSPENDED = "suspended"


@dataclass
class StepError:
    step: str | None
    message: str
    kind: ErrorKind = ErrorKind.EXECUTION

    def to_dict(self) -> dict:
        return {"step": self.step, "message": self.message, "kind": self.kind.value}

    @classmethod
    def from_dict(cls, data: dict) -> "StepError":
        return cls(
            step=data.get("step"),
            message=data.get("message", ""),
            kind=ErrorKind(data.get("kind", ErrorKind.EXECUTION.value)),
        )


@dataclass
class SuspendedStep:
    step: str
    path: str
    data: Any = None
    reason: str = "human"  # "human" | "delay"
    prompt: str | None = None
    form_schema: dict = field(default_factory=dict)
    timeout: Any = None
    resume_at: float | None = None  # epoch seconds, delay only

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "path": self.path,
            "data": self.data,
            "reason": self.reason,
            "prompt": self.prompt,
            "form_schema": self.form_schema,
            "timeout": self.timeout,
            "resume_at": self.resume_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SuspendedStep":
        return cls(
            step=data["step"],
            path=data.get("path", data["step"]),
            data=data.get("data"),
            reason=data.get("reason", "human"),
            prompt=data.get("prompt"),
            form_schema=data.get("form_schema") or {},
            timeout=data.get("timeout"),
            resume_at=data.get("resume_at"),
        )


@dataclass
class SuspensionState:
    """Everything needed to continue a suspended run.

    ``completed`` maps scoped step paths (``"loop/2/double"``) to the outputs
    they produced, so resumption replays them instead of re-executing.
    """

    input: Any = None
    completed: dict[str, Any] = field(default_factory=dict)
    suspended: list[SuspendedStep] = field(default_factory=list)

    def find(self, path: str) -> SuspendedStep | None:
        for entry in self.suspended:
            if entry.path == path:
                return entry
        return None

    def to_dict(self) -> dict:
        return {
            "input": self.input,
            "completed": self.completed,
            "suspended": [s.to_dict() for s in self.suspended],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SuspensionState":
        return cls(
            input=data.get("input"),
            completed=dict(data.get("completed") or {}),
            suspended=[SuspendedStep.from_dict(s) for s in data.get("suspended") or []],
        )


@dataclass
class ResumeInput:
    """Human-supplied data for a suspended step, addressed by id or scoped path."""

    step: str
    data: Any = None

    def matches(self, step_id: str, path: str) -> bool:
        return self.step == path or self.step == step_id


@dataclass
class StepRecord:
    step_id: str
    step_type: str
    path: str
    status: str  # "completed" | "failed" | "suspended" | "skipped"
    step_name: str = ""
    input: Any = None
    output: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: float = 0.0
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "step_type": self.step_type,
            "step_name": self.step_name,
            "path": self.path,
            "status": self.status,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "details": self.details,
        }


@dataclass
class ExecutionResult:
    status: RunStatus
    output: Any = None
    error: StepError | None = None
    suspended: list[SuspendedStep] = field(default_factory=list)
    steps: list[StepRecord] = field(default_factory=list)
    state: SuspensionState | None = None
    duration: float = 0.0
    run_id: str | None = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "run_id": self.run_id,
            "status": self.status.value,
            "output": self.output,
            "duration": self.duration,
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.status == RunStatus.SUSPENDED:
            data["suspended"] = [s.to_dict() for s in self.suspended]
            data["state"] = self.state.to_dict() if self.state else None
        return data

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)
