"""LLM-backed agent invoker: resolves an agent slug to its config and runs a tool-calling loop."""

from __future__ import annotations

import json
import logging
from typing import Any

from stepforge.config.schema import AgentConfig
from stepforge.core.errors import StepExecutionError
from stepforge.core.interfaces import AgentInvoker, AgentResponse
from stepforge.llm.provider import LLMError
from stepforge.llm.router import LLMRouter
from stepforge.tools.registry import ToolRegistry

_log = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 10


class LLMAgentInvoker(AgentInvoker):

    def __init__(
        self,
        agents: dict[str, AgentConfig],
        router: LLMRouter,
        tools: ToolRegistry | None = None,
    ):
        self.agents = agents
        self.router = router
        self.tools = tools or ToolRegistry()

    async def invoke(self, agent_slug: str, prompt: str, **options: Any) -> AgentResponse:
        agent = self.agents.get(agent_slug)
        if agent is None:
            raise StepExecutionError(
                f"Agent '{agent_slug}' not found. Available: {sorted(self.agents)}"
            )

        max_steps = options.get("max_steps") or DEFAULT_MAX_STEPS
        tools = self.tools.resolve_tools(agent.tools)
        schemas = [t.to_openai_schema() for t in tools] or None

        messages: list[dict[str, Any]] = []
        if agent.instructions:
            messages.append({"role": "system", "content": agent.instructions})
        messages.append({"role": "user", "content": prompt})

        total = AgentResponse()
        for _ in range(max_steps):
            extra: dict[str, Any] = {}
            if schemas:
                extra = {"tools": schemas, "tool_choice": "auto"}
            try:
                response = await self.router.complete(
                    messages=messages,
                    model=agent.llm,
                    fallback=agent.fallback or None,
                    temperature=agent.temperature,
                    max_tokens=agent.max_tokens,
                    **extra,
                )
            except LLMError as e:
                _log.warning("Agent '%s' exhausted %s, last error: %s", agent_slug, e.models_tried, e.last_error)
                raise StepExecutionError(f"Agent '{agent_slug}' failed: {e}")

            response.add_usage(total)
            if not response.wants_tools:
                total.text = response.content or ""
                return total

            messages.append(response.assistant_message())
            for call in response.tool_calls:
                name = call["function"]["name"]
                args = call["function"]["arguments"]
                total.tool_calls.append({"name": name, "arguments": args})
                try:
                    result = await self.tools.invoke(name, args)
                    content = result if isinstance(result, str) else json.dumps(result, default=str)
                except Exception as e:
                    _log.warning("Agent '%s' tool call %s failed: %s", agent_slug, name, e)
                    content = f"Error: {type(e).__name__}: {e}"
                messages.append({"role": "tool", "tool_call_id": call["id"], "content": content})

        raise StepExecutionError(f"Agent '{agent_slug}' did not finish within {max_steps} steps")
