"""Shared fixtures for StepForge tests."""

from __future__ import annotations

import pytest
from unittest.mock import AsyncMock, MagicMock

from stepforge.core.engine import WorkflowEngine
from stepforge.core.interfaces import AgentInvoker, AgentResponse, InMemoryWorkflowLookup, ToolInvoker
from stepforge.llm.provider import LLMResponse
from stepforge.llm.router import LLMRouter
from stepforge.observe.events import EventBus
from stepforge.observe.tracer import Tracer
from stepforge.tools.base import Tool
from stepforge.tools.registry import ToolRegistry


@pytest.fixture
def sample_config():
    """Minimal valid project configuration dict."""
    return {
        "name": "Test Project",
        "llm": "openai/gpt-4o-mini",
        "runtime": {"timeout": 30, "max_depth": 5},
        "agents": {
            "assistant": {"instructions": "Answer questions accurately"},
        },
        "workflow": {
            "id": "main",
            "steps": [
                {
                    "id": "answer",
                    "type": "agent",
                    "config": {"agentSlug": "assistant", "promptTemplate": "{{input.question}}"},
                }
            ],
        },
    }


@pytest.fixture
def mock_agents():
    """An agent invoker answering every prompt with a canned response."""
    invoker = MagicMock(spec=AgentInvoker)
    invoker.invoke = AsyncMock(
        return_value=AgentResponse(
            text="This is a test response.",
            model_used="openai/gpt-4o-mini",
            input_tokens=50,
            output_tokens=20,
            cost=0.001,
        )
    )
    return invoker


@pytest.fixture
def mock_tools():
    """A tool invoker echoing its arguments back."""
    invoker = MagicMock(spec=ToolInvoker)

    async def echo(tool_id, args):
        return {"tool": tool_id, "args": args}

    invoker.invoke = AsyncMock(side_effect=echo)
    return invoker


@pytest.fixture
def workflow_lookup():
    return InMemoryWorkflowLookup()


@pytest.fixture
def tracer():
    """A fresh tracer instance."""
    return Tracer()


@pytest.fixture
def event_bus():
    """A fresh event bus instance."""
    return EventBus()


@pytest.fixture
def engine(mock_agents, mock_tools, workflow_lookup, tracer, event_bus):
    return WorkflowEngine(
        agents=mock_agents,
        tools=mock_tools,
        workflows=workflow_lookup,
        tracer=tracer,
        event_bus=event_bus,
    )


@pytest.fixture
def mock_llm_router():
    """A mock LLM router that returns canned responses."""
    router = MagicMock(spec=LLMRouter)
    router.default_model = "openai/gpt-4o-mini"

    async def mock_complete(**kwargs):
        return LLMResponse(
            content="This is a test response.",
            tool_calls=[],
            model_used="openai/gpt-4o-mini",
            input_tokens=50,
            output_tokens=20,
            cost=0.001,
            latency_ms=100,
        )

    router.complete = AsyncMock(side_effect=mock_complete)
    return router


@pytest.fixture
def sample_tool():
    """A simple test tool."""
    async def handler(query: str) -> str:
        return f"Result for: {query}"

    return Tool(
        name="test_tool",
        description="A test tool",
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Test query"},
            },
            "required": ["query"],
        },
        handler=handler,
    )


@pytest.fixture
def tool_registry(sample_tool):
    return ToolRegistry([sample_tool])
