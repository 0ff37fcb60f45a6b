"""Per-run execution context threaded through the interpreter."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

_SAFE_ENV_KEYS = (
    "SLACK_DEFAULT_CHANNEL",
    "SLACK_ALERTS_CHANNEL",
    "SLACK_DEFAULT_AGENT_SLUG",
    "NEXT_PUBLIC_APP_URL",
)
_ENV_PREFIX = "WORKFLOW_"

RESERVED_NAMES = ("input", "steps", "variables", "env")


def curated_env(environ: dict | None = None) -> dict[str, str]:
    """Environment variables templates may read: a fixed allow-list plus ``WORKFLOW_*``."""
    environ = os.environ if environ is None else environ
    curated = {key: environ[key] for key in _SAFE_ENV_KEYS if environ.get(key)}
    for key, value in environ.items():
        if key.startswith(_ENV_PREFIX) and value:
            curated[key] = value
    return curated


@dataclass
class ExecutionContext:
    input: Any = None
    steps: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)

    def fork(self, **variables: Any) -> "ExecutionContext":
        """Private copy for a parallel branch or loop iteration.

        Step outputs are shared by reference; only the mappings are copied, so
        writes in the fork never reach the parent.
        """
        return ExecutionContext(
            input=self.input,
            steps=dict(self.steps),
            variables={**self.variables, **variables},
            env=self.env,
        )

    def namespace(self) -> dict[str, Any]:
        ns: dict[str, Any] = dict(self.steps)
        ns.update(self.variables)
        ns.update(
            {
                "input": self.input,
                "steps": self.steps,
                "variables": self.variables,
                "env": self.env,
            }
        )
        return ns
