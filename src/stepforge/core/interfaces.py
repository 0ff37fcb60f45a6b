"""External collaborators the engine calls out to: agents, tools, and workflow lookup."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentResponse:
    text: str = ""
    tool_calls: list[dict] = field(default_factory=list)
    model_used: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


class AgentInvoker(ABC):

    @abstractmethod
    async def invoke(self, agent_slug: str, prompt: str, **options: Any) -> AgentResponse | str | dict:
        ...


class ToolInvoker(ABC):

    @abstractmethod
    async def invoke(self, tool_id: str, args: Any) -> Any:
        ...


class WorkflowLookup(ABC):

    @abstractmethod
    async def resolve(self, workflow_id: str) -> Any:
        """Return a ``WorkflowDefinition`` (or its dict form) for an id or slug, or ``None``."""
        ...


class InMemoryWorkflowLookup(WorkflowLookup):
    """Workflow definitions held in a dict, addressable by key or by their own ``id``."""

    def __init__(self, workflows: dict[str, Any] | None = None):
        self._workflows: dict[str, Any] = dict(workflows or {})

    def register(self, key: str, definition: Any):
        self._workflows[key] = definition

    def remove(self, key: str):
        self._workflows.pop(key, None)

    def clear(self):
        self._workflows.clear()

    async def resolve(self, workflow_id: str) -> Any:
        if workflow_id in self._workflows:
            return self._workflows[workflow_id]
        for definition in self._workflows.values():
            own_id = definition.get("id") if isinstance(definition, dict) else getattr(definition, "id", None)
            if own_id == workflow_id:
                return definition
        return None


def normalize_agent_response(response: Any) -> AgentResponse | None:
    """Coerce what an invoker returned into an ``AgentResponse``.

    Returns ``None`` for structured results (dicts without ``text``), which are
    stored as the step output unchanged.
    """
    if isinstance(response, AgentResponse):
        return response
    if response is None:
        return AgentResponse()
    if isinstance(response, str):
        return AgentResponse(text=response)
    if isinstance(response, dict) and "text" in response:
        return AgentResponse(
            text=str(response.get("text") or ""),
            tool_calls=list(response.get("toolCalls") or response.get("tool_calls") or []),
            model_used=str(response.get("model") or ""),
        )
    return None
