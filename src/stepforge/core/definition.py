"""Workflow definition models: steps, per-type config, and the definition itself."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from stepforge.core.errors import DefinitionError


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class StepConfigError(ValueError):
    """Carries the id of the innermost offending step through pydantic's error wrapping."""

    def __init__(self, message: str, step_id: str | None = None):
        self.step_id = step_id
        super().__init__(message)


class Step(_Model):
    """One unit of a workflow. ``config`` is replaced by the typed model for ``type``."""

    id: str
    type: str = "transform"
    name: str = ""
    input_mapping: dict[str, Any] = Field(default_factory=dict, alias="inputMapping")
    config: Any = None
    timeout: Optional[float] = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("step id must be a non-empty string")
        return v

    @model_validator(mode="after")
    def validate_config(self) -> "Step":
        model_cls = CONFIG_MODELS.get(self.type, GenericConfig)
        raw = self.config
        if isinstance(raw, BaseModel):
            raw = raw.model_dump(by_alias=True)
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError(f"config of step '{self.id}' must be a mapping")
        try:
            self.config = model_cls.model_validate(raw)
        except ValidationError as e:
            errors = e.errors()
            inner = _wrapped_step_id(errors[0]) or _step_id_at(raw, errors[0]["loc"])
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in errors
            )
            raise StepConfigError(
                f"invalid config for {self.type} step '{self.id}': {details}",
                step_id=inner or self.id,
            )
        return self


class GenericConfig(_Model):
    pass


class AgentStepConfig(_Model):
    agent_slug: str = Field(alias="agentSlug")
    prompt_template: str = Field(default="", alias="promptTemplate")
    output_format: str = Field(default="text", alias="outputFormat")
    max_steps: Optional[int] = Field(default=None, alias="maxSteps")

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        allowed = ("text", "json")
        if v not in allowed:
            raise ValueError(f"outputFormat must be one of {allowed}, got '{v}'")
        return v


class ToolStepConfig(_Model):
    tool_id: str = Field(alias="toolId")
    parameters: dict[str, Any] = Field(default_factory=dict)


class WorkflowCallConfig(_Model):
    workflow_id: str = Field(alias="workflowId")
    input: dict[str, Any] = Field(default_factory=dict)


class ConditionalBranch(_Model):
    id: str
    condition: str
    steps: list[Step] = Field(default_factory=list)


class BranchStepConfig(_Model):
    branches: list[ConditionalBranch] = Field(default_factory=list)
    default_branch: Optional[list[Step]] = Field(default=None, alias="defaultBranch")


class ParallelBranch(_Model):
    id: str
    steps: list[Step] = Field(default_factory=list)


class ParallelStepConfig(_Model):
    branches: list[ParallelBranch] = Field(default_factory=list)


class ForeachStepConfig(_Model):
    collection_path: str = Field(alias="collectionPath")
    steps: list[Step] = Field(default_factory=list)
    item_var: str = Field(default="item", alias="itemVar")
    concurrency: int = 1
    strict: bool = False

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"concurrency must be at least 1, got {v}")
        return v


class DoWhileStepConfig(_Model):
    steps: list[Step] = Field(default_factory=list)
    condition_expression: str = Field(alias="conditionExpression")
    max_iterations: int = Field(default=10, alias="maxIterations")


class HumanStepConfig(_Model):
    prompt: Optional[str] = None
    form_schema: dict[str, Any] = Field(default_factory=dict, alias="formSchema")
    timeout: Any = None


class DelayStepConfig(_Model):
    delay_ms: int = Field(default=0, alias="delayMs")

    @field_validator("delay_ms")
    @classmethod
    def validate_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"delayMs must not be negative, got {v}")
        return v


CONFIG_MODELS: dict[str, type[BaseModel]] = {
    "transform": GenericConfig,
    "agent": AgentStepConfig,
    "tool": ToolStepConfig,
    "workflow": WorkflowCallConfig,
    "branch": BranchStepConfig,
    "parallel": ParallelStepConfig,
    "foreach": ForeachStepConfig,
    "dowhile": DoWhileStepConfig,
    "human": HumanStepConfig,
    "delay": DelayStepConfig,
}


def child_step_lists(step: Step) -> list[list[Step]]:
    """Nested step lists owned by a control-flow step."""
    config = step.config
    if isinstance(config, BranchStepConfig):
        lists = [b.steps for b in config.branches]
        if config.default_branch is not None:
            lists.append(config.default_branch)
        return lists
    if isinstance(config, ParallelStepConfig):
        return [b.steps for b in config.branches]
    if isinstance(config, (ForeachStepConfig, DoWhileStepConfig)):
        return [config.steps]
    return []


class WorkflowDefinition(_Model):
    id: Optional[str] = None
    name: str = ""
    steps: list[Step] = Field(default_factory=list)
    output_mapping: Optional[dict[str, Any]] = Field(default=None, alias="outputMapping")

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowDefinition":
        if isinstance(data, WorkflowDefinition):
            return data
        if not isinstance(data, dict):
            raise DefinitionError(
                f"Workflow definition must be a mapping, got {type(data).__name__}"
            )
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            err = e.errors()[0]
            loc = err["loc"]
            location = " → ".join(str(p) for p in loc)
            raise DefinitionError(
                f"Invalid workflow definition at {location or 'root'}: {err['msg']}",
                step_id=_wrapped_step_id(err) or _step_id_at(data, loc),
            )

    def iter_steps(self):
        """Depth-first walk over every step, nested ones included."""
        stack = list(reversed(self.steps))
        while stack:
            step = stack.pop()
            yield step
            for nested in reversed(child_step_lists(step)):
                stack.extend(reversed(nested))


def _wrapped_step_id(error: dict) -> str | None:
    wrapped = (error.get("ctx") or {}).get("error")
    if isinstance(wrapped, StepConfigError):
        return wrapped.step_id
    return None


def _looks_like_step(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get("id"), str) and "type" in value


def _step_id_at(data: Any, loc: tuple) -> str | None:
    """Id of the innermost step dict along a pydantic error location."""
    step_id = None
    current = data
    for part in loc:
        if _looks_like_step(current):
            step_id = current["id"]
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and isinstance(part, int) and 0 <= part < len(current):
            current = current[part]
        else:
            break
    if _looks_like_step(current):
        step_id = current["id"]
    return step_id
