"""Default configuration values."""

from __future__ import annotations

import copy

DEFAULTS = {
    "name": "StepForge Project",
    "llm": "openai/gpt-4o-mini",
    "runtime": {
        "timeout": 300,
        "max_depth": 5,
        "max_inline_delay_ms": 0,
        "parallel_policy": "fail_fast",
    },
    "observe": {
        "trace": True,
        "cost_tracking": True,
        "log_level": "info",
        "log_format": "pretty",
    },
    "store": {
        "backend": "memory",
        "path": ".stepforge/runs.db",
    },
    "agents": {},
    "workflows": {},
    "tools": [],
}

AGENT_DEFAULTS = {
    "instructions": "",
    "temperature": 0.7,
    "max_tokens": 4096,
    "fallback": [],
    "tools": [],
}


def merge_with_defaults(config: dict) -> dict:
    merged = _deep_merge(copy.deepcopy(DEFAULTS), config)
    agents = merged.get("agents")
    if isinstance(agents, dict):
        merged["agents"] = {
            slug: _deep_merge(AGENT_DEFAULTS, agent) if isinstance(agent, dict) else agent
            for slug, agent in agents.items()
        }
    return merged


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base. Returns a new dict."""
    merged = {}
    for key in set(base) | set(override):
        if key in base and key in override:
            bv, ov = base[key], override[key]
            if isinstance(bv, dict) and isinstance(ov, dict):
                merged[key] = _deep_merge(bv, ov)
            else:
                merged[key] = copy.deepcopy(ov)
        elif key in override:
            merged[key] = copy.deepcopy(override[key])
        else:
            merged[key] = copy.deepcopy(base[key])
    return merged
