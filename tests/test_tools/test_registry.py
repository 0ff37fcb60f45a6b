"""Tests for the tool registry."""

from __future__ import annotations

import pytest

from stepforge.core.errors import StepExecutionError
from stepforge.tools.base import Tool
from stepforge.tools.registry import ToolRegistry


class TestToolRegistry:
    def test_register_and_get(self, tool_registry, sample_tool):
        assert tool_registry.get("test_tool") is sample_tool
        assert tool_registry.get("missing") is None

    def test_list_sorted(self, tool_registry):
        tool_registry.register(Tool(name="alpha", description="", parameters={}, handler=lambda: 1))
        assert tool_registry.list_tools() == ["alpha", "test_tool"]

    def test_unregister(self, tool_registry):
        tool_registry.unregister("test_tool")
        tool_registry.unregister("never_there")
        assert tool_registry.list_tools() == []

    def test_resolve_skips_unknown(self, tool_registry, sample_tool):
        assert tool_registry.resolve_tools(["test_tool", "ghost"]) == [sample_tool]

    @pytest.mark.asyncio
    async def test_invoke(self, tool_registry):
        assert await tool_registry.invoke("test_tool", {"query": "q"}) == "Result for: q"

    @pytest.mark.asyncio
    async def test_invoke_unknown(self, tool_registry):
        with pytest.raises(StepExecutionError, match="Tool 'ghost' not found"):
            await tool_registry.invoke("ghost", {})

    @pytest.mark.asyncio
    async def test_invoke_non_mapping(self, tool_registry):
        with pytest.raises(StepExecutionError, match="mapping"):
            await tool_registry.invoke("test_tool", ["q"])


class TestLoadModule:
    def test_loads_module_tools(self, tmp_path):
        module = tmp_path / "crm_tools.py"
        module.write_text(
            "from stepforge.tools.base import tool\n"
            "\n"
            "@tool(description='Find a customer')\n"
            "def crm_lookup(customer_id: str) -> dict:\n"
            "    return {'id': customer_id, 'tier': 'gold'}\n"
            "\n"
            "NOT_A_TOOL = 42\n"
        )
        registry = ToolRegistry()
        loaded = registry.load_module(module)

        assert [t.name for t in loaded] == ["crm_lookup"]
        assert registry.list_tools() == ["crm_lookup"]

    def test_missing_module(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ToolRegistry().load_module(tmp_path / "nope.py")
