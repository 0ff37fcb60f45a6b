"""Tool base class and the @tool decorator."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, get_type_hints


class Tool:
    """
    A named callable invoked by ``tool`` steps and by tool-using agents.

    Attributes:
        name: unique tool id referenced by ``toolId``
        description: shown to the LLM
        parameters: JSON Schema for arguments
        handler: sync or async callable taking keyword arguments
    """

    def __init__(self, name: str, description: str, parameters: dict, handler: Callable):
        self.name = name
        self.description = description
        self.parameters = parameters
        self.handler = handler

    async def call(self, args: dict | None = None) -> Any:
        """Run the handler and return its raw result. Exceptions propagate to the caller."""
        kwargs = args or {}
        if asyncio.iscoroutinefunction(self.handler):
            return await self.handler(**kwargs)
        result = self.handler(**kwargs)
        if inspect.isawaitable(result):
            return await result
        return result

    def to_openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def __repr__(self) -> str:
        return f"Tool(name={self.name!r})"


_TYPE_MAP = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def _build_parameters_schema(func: Callable) -> dict:
    sig = inspect.signature(func)
    hints = get_type_hints(func)

    properties: dict[str, Any] = {}
    required = []
    for param_name, param in sig.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        prop: dict[str, Any] = {
            "type": _TYPE_MAP.get(hints.get(param_name, str), "string"),
            "description": param_name.replace("_", " ").title(),
        }
        if param.default is inspect.Parameter.empty:
            required.append(param_name)
        else:
            prop["default"] = param.default
        properties[param_name] = prop

    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def tool(name: str | None = None, description: str = ""):
    """
    Turn a function into a ``Tool``.

    Usage:
        @tool(description="Look up a customer record")
        async def crm_lookup(customer_id: str) -> dict:
            ...
    """

    def decorator(func: Callable) -> Tool:
        tool_name = name or func.__name__
        return Tool(
            name=tool_name,
            description=description or (func.__doc__ or "").strip() or f"Tool: {tool_name}",
            parameters=_build_parameters_schema(func),
            handler=func,
        )

    return decorator
