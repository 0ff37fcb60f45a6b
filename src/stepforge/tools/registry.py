"""Tool registry: the ``ToolInvoker`` that ``tool`` steps call."""

from __future__ import annotations

import importlib.util
import logging
from pathlib import Path
from typing import Any

from stepforge.core.errors import StepExecutionError
from stepforge.core.interfaces import ToolInvoker
from stepforge.tools.base import Tool

_log = logging.getLogger(__name__)


class ToolRegistry(ToolInvoker):

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for entry in tools or []:
            self.register(entry)

    def register(self, tool: Tool):
        self._tools[tool.name] = tool

    def unregister(self, name: str):
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        return sorted(self._tools)

    def resolve_tools(self, names: list[str]) -> list[Tool]:
        resolved = []
        for name in names:
            found = self.get(name)
            if found is None:
                _log.warning("Tool '%s' is not registered, skipping", name)
                continue
            resolved.append(found)
        return resolved

    async def invoke(self, tool_id: str, args: Any) -> Any:
        found = self.get(tool_id)
        if found is None:
            raise StepExecutionError(f"Tool '{tool_id}' not found. Available: {self.list_tools()}")
        if args is not None and not isinstance(args, dict):
            raise StepExecutionError(
                f"Tool '{tool_id}' expects a mapping of arguments, got {type(args).__name__}"
            )
        _log.debug("Calling tool %s", tool_id)
        return await found.call(args)

    def load_module(self, path: str | Path) -> list[Tool]:
        """Import a Python file and register every ``Tool`` defined at module level."""
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Tool module not found: '{file_path}'")

        spec = importlib.util.spec_from_file_location(f"stepforge_tools_{file_path.stem}", file_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot import tools from '{file_path}'")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        loaded = [attr for attr in vars(module).values() if isinstance(attr, Tool)]
        for entry in loaded:
            self.register(entry)
        _log.info("Loaded %d tool(s) from %s", len(loaded), file_path)
        return loaded
