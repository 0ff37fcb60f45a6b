"""Abstract base for run persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from stepforge.core.result import ExecutionResult, SuspensionState


class RunNotFoundError(KeyError):

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(run_id)

    def __str__(self) -> str:
        return f"Run '{self.run_id}' not found"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunRecord:
    """What a run looked like when it last stopped. ``definition`` is kept so it can be resumed."""

    run_id: str
    definition: dict
    status: str
    input: Any = None
    output: Any = None
    error: dict | None = None
    suspended: list[dict] = field(default_factory=list)
    state: dict | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @classmethod
    def from_result(cls, definition: dict, input: Any, result: ExecutionResult) -> "RunRecord":
        return cls(
            run_id=result.run_id,
            definition=definition,
            status=result.status.value,
            input=input,
            output=result.output,
            error=result.error.to_dict() if result.error else None,
            suspended=[s.to_dict() for s in result.suspended],
            state=result.state.to_dict() if result.state else None,
        )

    def suspension_state(self) -> SuspensionState | None:
        return SuspensionState.from_dict(self.state) if self.state else None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "definition": self.definition,
            "status": self.status,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "suspended": self.suspended,
            "state": self.state,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunRecord":
        return cls(**data)


class RunStore(ABC):

    @abstractmethod
    async def save(self, record: RunRecord) -> None:
        ...

    @abstractmethod
    async def get(self, run_id: str) -> RunRecord:
        """Return the stored record or raise ``RunNotFoundError``."""
        ...

    @abstractmethod
    async def list(self, status: str | None = None, limit: int = 50) -> list[RunRecord]:
        ...

    @abstractmethod
    async def delete(self, run_id: str) -> None:
        ...
