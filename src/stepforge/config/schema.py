"""Pydantic models for YAML config validation."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from stepforge.core.definition import AgentStepConfig, WorkflowCallConfig, WorkflowDefinition


class RuntimeConfig(BaseModel):
    timeout: Optional[float] = 300
    max_depth: int = 5
    max_inline_delay_ms: int = 0
    parallel_policy: str = "fail_fast"

    @field_validator("parallel_policy")
    @classmethod
    def validate_parallel_policy(cls, v: str) -> str:
        allowed = ("fail_fast", "collect_all")
        if v not in allowed:
            raise ValueError(f"parallel_policy must be one of {allowed}, got '{v}'")
        return v

    @field_validator("max_depth")
    @classmethod
    def validate_max_depth(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"max_depth must not be negative, got {v}")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            raise ValueError(f"timeout must not be negative, got {v}")
        return v or None


class ObserveConfig(BaseModel):
    trace: bool = True
    cost_tracking: bool = True
    max_trace_events: Optional[int] = Field(default=10_000, ge=1)
    log_level: str = "info"
    log_format: str = "pretty"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ("debug", "info", "warning", "error")
        if v not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got '{v}'")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ("pretty", "json")
        if v not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got '{v}'")
        return v


class StoreConfig(BaseModel):
    backend: str = "memory"
    path: str = ".stepforge/runs.db"

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        allowed = ("memory", "sqlite")
        if v not in allowed:
            raise ValueError(f"store backend must be one of {allowed}, got '{v}'")
        return v


class AgentConfig(BaseModel):
    llm: Optional[str] = None
    instructions: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    fallback: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)

    @field_validator("llm")
    @classmethod
    def validate_llm(cls, v: str | None) -> str | None:
        if v is not None and "/" not in v:
            raise ValueError(f"agent llm must be in 'provider/model' format, got '{v}'")
        return v

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        if not 0.0 <= v <= 2.0:
            raise ValueError(f"temperature must be between 0.0 and 2.0, got {v}")
        return v


class ProjectConfig(BaseModel):
    name: str = "StepForge Project"
    llm: str = "openai/gpt-4o-mini"
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    observe: ObserveConfig = Field(default_factory=ObserveConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    tools: list[str] = Field(default_factory=list)
    agents: dict[str, AgentConfig] = Field(default_factory=dict)
    workflows: dict[str, WorkflowDefinition] = Field(default_factory=dict)
    workflow: WorkflowDefinition

    @field_validator("llm")
    @classmethod
    def validate_llm(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError(
                f"llm must be in 'provider/model' format (e.g., 'openai/gpt-4o-mini'), got '{v}'"
            )
        return v

    @model_validator(mode="after")
    def validate_references(self) -> "ProjectConfig":
        definitions = [self.workflow, *self.workflows.values()]
        known_workflows = set(self.workflows) | {d.id for d in definitions if d.id}
        for definition in definitions:
            for step in definition.iter_steps():
                config: Any = step.config
                if isinstance(config, AgentStepConfig) and self.agents and config.agent_slug not in self.agents:
                    raise ValueError(
                        f"Step '{step.id}' references agent '{config.agent_slug}' "
                        f"which is not defined. Available: {sorted(self.agents)}"
                    )
                if isinstance(config, WorkflowCallConfig) and config.workflow_id not in known_workflows:
                    raise ValueError(
                        f"Step '{step.id}' calls workflow '{config.workflow_id}' "
                        f"which is not defined. Available: {sorted(known_workflows)}"
                    )
        return self
