"""Step executors: one async handler per step type, registered in a lookup table.

A handler receives the step, its resolved input mapping, and a ``StepRuntime``
handle back into the engine. It returns the step output, or a ``Suspend``
marker when the run has to stop and wait for outside input.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from stepforge.core.context import ExecutionContext
from stepforge.core.definition import (
    AgentStepConfig,
    BranchStepConfig,
    DelayStepConfig,
    DoWhileStepConfig,
    ForeachStepConfig,
    HumanStepConfig,
    ParallelStepConfig,
    Step,
    ToolStepConfig,
    WorkflowCallConfig,
    WorkflowDefinition,
)
from stepforge.core.errors import (
    CyclicInvocationError,
    ExpressionError,
    MaxDepthError,
    StepExecutionError,
)
from stepforge.core.expression import evaluate_condition
from stepforge.core.interfaces import normalize_agent_response
from stepforge.core.resolver import resolve_collection, resolve_input_mapping, resolve_template, resolve_value
from stepforge.core.result import ExecutionResult, RunStatus, StepError, SuspendedStep
from stepforge.observe.tracer import EventType

if TYPE_CHECKING:
    from stepforge.core.engine import StepRuntime

_log = logging.getLogger(__name__)

Handler = Callable[[Step, Any, "StepRuntime"], Awaitable[Any]]


@dataclass
class Suspend:
    """Returned by a handler to halt the run until outside input arrives."""

    suspended: list[SuspendedStep] = field(default_factory=list)
    output: Any = None


class NestedRunFailed(Exception):
    """A nested step list failed. Carries the innermost error unchanged."""

    def __init__(self, error: StepError):
        self.error = error
        super().__init__(error.message)


class ExecutorRegistry:

    def __init__(self, handlers: dict[str, Handler] | None = None):
        self._handlers: dict[str, Handler] = dict(handlers or {})

    def register(self, step_type: str, handler: Handler | None = None):
        """Register a handler, or use as ``@registry.register("type")``."""
        if handler is not None:
            self._handlers[step_type] = handler
            return handler

        def decorator(func: Handler) -> Handler:
            self._handlers[step_type] = func
            return func

        return decorator

    def unregister(self, step_type: str):
        self._handlers.pop(step_type, None)

    def get(self, step_type: str) -> Handler | None:
        return self._handlers.get(step_type)

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def copy(self) -> "ExecutorRegistry":
        return ExecutorRegistry(self._handlers)

    def __contains__(self, step_type: str) -> bool:
        return step_type in self._handlers


# ---------- helpers ----------

_FENCE_OPEN_RE = re.compile(r"^```(?:json|javascript|js)?\s*", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\s*```\s*$")


def parse_agent_json_output(text: str, step_id: str) -> Any:
    """Extract the first JSON object or array from agent text, tolerating code fences."""
    if not text or not isinstance(text, str):
        raise StepExecutionError(
            f"[Step: {step_id}] Agent output is empty or not a string. Cannot parse JSON.",
            step_id,
        )
    cleaned = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", text.strip())).strip()
    start = re.search(r"[{\[]", cleaned)
    if start is None:
        preview = text[:200] + ("..." if len(text) > 200 else "")
        raise StepExecutionError(
            f"[Step: {step_id}] No JSON object or array found in agent output. Received: {preview}",
            step_id,
        )
    try:
        parsed, _ = json.JSONDecoder().raw_decode(cleaned, start.start())
    except json.JSONDecodeError as e:
        raise StepExecutionError(
            f"[Step: {step_id}] Failed to parse JSON from agent output: {e.msg} "
            f"(line {e.lineno}, column {e.colno})",
            step_id,
        )
    return parsed


def unwrap_tool_result(result: Any) -> Any:
    """MCP tools answer ``{"content": [{"type": "text", "text": "<json>"}]}``; native tools answer data."""
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        for entry in result["content"]:
            if isinstance(entry, dict) and entry.get("type") == "text" and isinstance(entry.get("text"), str):
                try:
                    return json.loads(entry["text"])
                except ValueError:
                    return entry["text"]
    return result


def _with_meta(value: Any, key: str, meta: Any) -> dict:
    base = dict(value) if isinstance(value, dict) else {"value": value}
    base[key] = meta
    return base


# ---------- leaf steps ----------

async def execute_transform(step: Step, resolved_input: Any, rt: "StepRuntime") -> Any:
    return resolved_input


async def execute_agent(step: Step, resolved_input: Any, rt: "StepRuntime") -> Any:
    config: AgentStepConfig = step.config
    invoker = rt.engine.agents
    if invoker is None:
        raise StepExecutionError(f"Agent step '{step.id}' needs an agent invoker, none configured", step.id)

    scope = rt.context.fork(**resolved_input) if isinstance(resolved_input, dict) else rt.context
    prompt = resolve_template(config.prompt_template, scope)
    if not isinstance(prompt, str):
        prompt = "" if prompt is None else json.dumps(prompt, default=str)

    options: dict[str, Any] = {}
    if config.max_steps is not None:
        options["max_steps"] = config.max_steps

    start = time.time()
    raw = await rt.call_external(
        invoker.invoke(config.agent_slug, prompt, **options),
        f"agent '{config.agent_slug}'",
    )
    response = normalize_agent_response(raw)

    await rt.emit(
        EventType.AGENT_CALL,
        data={"agent_slug": config.agent_slug, "model": response.model_used if response else ""},
        tokens={"input": response.input_tokens, "output": response.output_tokens} if response else {},
        cost=response.cost if response else 0.0,
        duration_ms=(time.time() - start) * 1000,
    )

    if response is None:
        return raw
    if config.output_format == "json":
        return parse_agent_json_output(response.text, step.id)
    return {
        "text": response.text,
        "result": response.text,
        "toolCalls": response.tool_calls,
        "agentSlug": config.agent_slug,
    }


async def execute_tool(step: Step, resolved_input: Any, rt: "StepRuntime") -> Any:
    config: ToolStepConfig = step.config
    invoker = rt.engine.tools
    if invoker is None:
        raise StepExecutionError(f"Tool step '{step.id}' needs a tool invoker, none configured", step.id)

    if step.input_mapping:
        args = resolved_input
    else:
        args = resolve_input_mapping(config.parameters, rt.context)

    start = time.time()
    result = await rt.call_external(invoker.invoke(config.tool_id, args), f"tool '{config.tool_id}'")
    await rt.emit(
        EventType.TOOL_CALL,
        data={"tool": config.tool_id},
        duration_ms=(time.time() - start) * 1000,
    )
    return unwrap_tool_result(result)


async def execute_workflow(step: Step, resolved_input: Any, rt: "StepRuntime") -> Any:
    config: WorkflowCallConfig = step.config
    lookup = rt.engine.workflows
    if lookup is None:
        raise StepExecutionError(f"Workflow step '{step.id}' needs a workflow lookup, none configured", step.id)

    target = config.workflow_id
    if target in rt.call_stack:
        chain = " → ".join((*rt.call_stack, target))
        raise CyclicInvocationError(f"Cyclic workflow invocation: {chain}", step.id)
    if rt.depth + 1 > rt.settings.max_depth:
        raise MaxDepthError(
            f"Maximum workflow nesting depth ({rt.settings.max_depth}) exceeded at '{target}'",
            step.id,
        )

    found = await rt.call_external(lookup.resolve(target), f"workflow lookup '{target}'")
    if found is None:
        raise StepExecutionError(f"Workflow '{target}' not found", step.id)
    definition = WorkflowDefinition.from_dict(found)
    if definition.id and definition.id != target and definition.id in rt.call_stack:
        chain = " → ".join((*rt.call_stack, definition.id))
        raise CyclicInvocationError(f"Cyclic workflow invocation: {chain}", step.id)
    rt.engine.validate(definition)

    if step.input_mapping:
        child_input = resolved_input
    else:
        child_input = resolve_input_mapping(config.input, rt.context)

    call_stack = tuple(dict.fromkeys((*rt.call_stack, target, *([definition.id] if definition.id else []))))
    child_context = ExecutionContext(input=child_input, env=rt.context.env)
    result = await rt.call_external(
        rt.engine.run_steps(
            definition.steps,
            child_context,
            rt.run,
            scope=f"{rt.path}/",
            call_stack=call_stack,
            depth=rt.depth + 1,
        ),
        f"workflow '{target}'",
    )
    if result.status != RunStatus.SUCCESS:
        return rt.propagate(result)
    if definition.output_mapping:
        return resolve_value(definition.output_mapping, child_context)
    return result.output


async def execute_human(step: Step, resolved_input: Any, rt: "StepRuntime") -> Any:
    config: HumanStepConfig = step.config
    resume = rt.run.resume
    if resume is not None and resume.matches(step.id, rt.path):
        return resume.data
    prompt = resolve_template(config.prompt or step.name or "Human approval required", rt.context)
    return Suspend(
        [
            SuspendedStep(
                step=step.id,
                path=rt.path,
                data=resolved_input,
                reason="human",
                prompt=prompt if isinstance(prompt, str) else json.dumps(prompt, default=str),
                form_schema=config.form_schema,
                timeout=config.timeout,
            )
        ]
    )


async def execute_delay(step: Step, resolved_input: Any, rt: "StepRuntime") -> Any:
    config: DelayStepConfig = step.config
    delay_ms = config.delay_ms
    done = {"delayedMs": delay_ms}
    if delay_ms <= 0:
        return done
    if delay_ms <= rt.settings.max_inline_delay_ms:
        await asyncio.sleep(delay_ms / 1000)
        return done

    resume = rt.run.resume
    if resume is not None and resume.matches(step.id, rt.path):
        return done

    previous = rt.run.previous.find(rt.path) if rt.run.previous else None
    if previous is not None and previous.reason == "delay" and previous.resume_at is not None:
        if time.time() >= previous.resume_at:
            return done
        resume_at = previous.resume_at
    else:
        resume_at = time.time() + delay_ms / 1000

    return Suspend(
        [SuspendedStep(step=step.id, path=rt.path, data=resolved_input, reason="delay", resume_at=resume_at)]
    )


# ---------- control flow ----------

async def execute_branch(step: Step, resolved_input: Any, rt: "StepRuntime") -> Any:
    config: BranchStepConfig = step.config
    namespace = rt.context.namespace()
    evaluations: list[dict] = []
    selected = None

    for branch in config.branches:
        try:
            matched = evaluate_condition(branch.condition, namespace)
        except ExpressionError as e:
            raise ExpressionError(
                f"[Branch: {step.id}] Condition of branch '{branch.id}' failed: {branch.condition}: {e.message}",
                step.id,
            )
        evaluations.append({"branchId": branch.id, "condition": branch.condition, "result": matched})
        if matched:
            selected = branch
            break

    rt.details["evaluations"] = evaluations

    if selected is not None:
        nested = selected.steps
    elif config.default_branch is not None:
        nested = config.default_branch
    else:
        _log.warning(
            "Branch step '%s': no condition matched and no defaultBranch defined (%s)",
            step.id,
            ", ".join(f"{e['branchId']}={e['result']}" for e in evaluations) or "no branches",
        )
        return {"branchId": None, "result": None}

    result = await rt.run_nested(nested, rt.context, f"{rt.path}/")
    if result.status != RunStatus.SUCCESS:
        return rt.propagate(result)
    return {"branchId": selected.id if selected else None, "result": result.output}


async def execute_parallel(step: Step, resolved_input: Any, rt: "StepRuntime") -> Any:
    config: ParallelStepConfig = step.config
    branches = config.branches
    if not branches:
        return {}
    fail_fast = rt.settings.parallel_policy == "fail_fast"

    async def _run_branch(index: int):
        branch = branches[index]
        result = await rt.run_nested(branch.steps, rt.context.fork(), f"{rt.path}/{branch.id}/")
        return index, result

    pending = {asyncio.ensure_future(_run_branch(i)) for i in range(len(branches))}
    results: dict[int, ExecutionResult] = {}
    failed_index: int | None = None
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                index, result = task.result()
                results[index] = result
                if result.status == RunStatus.FAILED and (failed_index is None or index < failed_index):
                    failed_index = index
            if failed_index is not None and fail_fast:
                break
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    if failed_index is not None:
        raise NestedRunFailed(results[failed_index].error)

    outputs = {branch.id: results[i].output for i, branch in enumerate(branches)}
    suspended = [
        entry
        for i in range(len(branches))
        if results[i].status == RunStatus.SUSPENDED
        for entry in results[i].suspended
    ]
    if suspended:
        return Suspend(suspended, output=outputs)
    return outputs


async def execute_foreach(step: Step, resolved_input: Any, rt: "StepRuntime") -> Any:
    config: ForeachStepConfig = step.config
    collection = resolve_collection(config.collection_path, rt.context)
    if isinstance(collection, tuple):
        collection = list(collection)
    if not isinstance(collection, list):
        if config.strict:
            raise StepExecutionError(
                f"Foreach step '{step.id}' collection '{config.collection_path}' is not a list",
                step.id,
            )
        _log.warning(
            "Foreach step '%s': '%s' resolved to %s, running zero iterations",
            step.id,
            config.collection_path,
            type(collection).__name__,
        )
        collection = []

    async def _iteration(index: int, item: Any) -> ExecutionResult:
        context = rt.context.fork(**{config.item_var: item, "index": index})
        return await rt.run_nested(config.steps, context, f"{rt.path}/{index}/")

    if config.concurrency == 1:
        outputs: list[Any] = []
        for index, item in enumerate(collection):
            result = await _iteration(index, item)
            if result.status != RunStatus.SUCCESS:
                return rt.propagate(result, output=outputs)
            outputs.append(result.output)
        return outputs

    semaphore = asyncio.Semaphore(config.concurrency)

    async def _bounded(index: int, item: Any) -> ExecutionResult:
        async with semaphore:
            return await _iteration(index, item)

    results = await asyncio.gather(*(_bounded(i, item) for i, item in enumerate(collection)))
    for result in results:
        if result.status == RunStatus.FAILED:
            raise NestedRunFailed(result.error)
    outputs = [result.output for result in results]
    suspended = [entry for result in results for entry in result.suspended]
    if suspended:
        return Suspend(suspended, output=outputs)
    return outputs


async def execute_dowhile(step: Step, resolved_input: Any, rt: "StepRuntime") -> Any:
    config: DoWhileStepConfig = step.config
    iteration = 0
    last: Any = resolved_input

    while True:
        context = rt.context.fork(iteration=iteration)
        result = await rt.run_nested(config.steps, context, f"{rt.path}/{iteration}/")
        if result.status != RunStatus.SUCCESS:
            return rt.propagate(result)

        last = result.output
        iteration += 1
        rt.context.steps.update(context.steps)
        rt.context.steps[step.id] = _with_meta(last, "_iteration", iteration)

        if iteration >= config.max_iterations:
            _log.warning(
                "DoWhile step '%s': max iterations (%d) reached, condition: %s",
                step.id,
                config.max_iterations,
                config.condition_expression,
            )
            break
        try:
            again = evaluate_condition(config.condition_expression, rt.context.namespace())
        except ExpressionError as e:
            raise ExpressionError(
                f"[DoWhile: {step.id}] Condition failed at iteration {iteration}: {e.message}",
                step.id,
            )
        if not again:
            break

    rt.details["iterations"] = iteration
    return _with_meta(last, "_totalIterations", iteration)


def default_registry() -> ExecutorRegistry:
    return ExecutorRegistry(
        {
            "transform": execute_transform,
            "agent": execute_agent,
            "tool": execute_tool,
            "workflow": execute_workflow,
            "human": execute_human,
            "delay": execute_delay,
            "branch": execute_branch,
            "parallel": execute_parallel,
            "foreach": execute_foreach,
            "dowhile": execute_dowhile,
        }
    )
