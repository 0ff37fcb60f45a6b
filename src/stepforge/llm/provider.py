"""Completion results handed from the model router to agent steps.

An agent step may take several completions to finish (one per round of tool
calls). Each :class:`LLMResponse` knows how to replay itself into the
conversation and how to fold its usage into the step's :class:`AgentResponse`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from stepforge.core.interfaces import AgentResponse


@dataclass
class LLMResponse:
    content: str | None = None
    # [{"id": ..., "function": {"name": ..., "arguments": {...}}}], arguments already decoded
    tool_calls: list[dict] = field(default_factory=list)
    model_used: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)

    def assistant_message(self) -> dict:
        """The assistant turn to append before the tool results, in OpenAI chat format."""
        return {
            "role": "assistant",
            "content": self.content or "",
            "tool_calls": [
                {
                    "id": call["id"],
                    "type": "function",
                    "function": {
                        "name": call["function"]["name"],
                        "arguments": json.dumps(call["function"]["arguments"]),
                    },
                }
                for call in self.tool_calls
            ],
        }

    def add_usage(self, total: AgentResponse) -> AgentResponse:
        total.model_used = self.model_used or total.model_used
        total.input_tokens += self.input_tokens
        total.output_tokens += self.output_tokens
        total.cost += self.cost
        return total


class LLMError(Exception):
    """Every model in a fallback chain failed."""

    def __init__(self, message: str, models_tried: list[str] | None = None, errors: list[str] | None = None):
        self.models_tried = models_tried or []
        self.errors = errors or []
        super().__init__(message)

    @property
    def last_error(self) -> str | None:
        return self.errors[-1] if self.errors else None
