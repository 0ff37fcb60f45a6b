"""Workflow execution engine: walks a step list, dispatching each step to its executor."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable

from stepforge.config.schema import RuntimeConfig
from stepforge.core.context import RESERVED_NAMES, ExecutionContext, curated_env
from stepforge.core.definition import Step, WorkflowDefinition, child_step_lists
from stepforge.core.errors import (
    DefinitionError,
    ErrorKind,
    StepTimeoutError,
    WorkflowError,
)
from stepforge.core.executors import ExecutorRegistry, NestedRunFailed, Suspend, default_registry
from stepforge.core.interfaces import AgentInvoker, ToolInvoker, WorkflowLookup
from stepforge.core.resolver import resolve_input_mapping, resolve_value
from stepforge.core.result import (
    ExecutionResult,
    ResumeInput,
    RunStatus,
    StepError,
    StepRecord,
    SuspensionState,
)
from stepforge.observe.events import EventBus
from stepforge.observe.tracer import EventType, TraceEvent, Tracer

_log = logging.getLogger(__name__)


class RunState:
    """Mutable bookkeeping shared by every nesting level of one run."""

    def __init__(
        self,
        run_id: str,
        resume: ResumeInput | None = None,
        previous: SuspensionState | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        self.run_id = run_id
        self.resume = resume
        self.previous = previous
        self.cancel_event = cancel_event
        self.completed: dict[str, Any] = dict(previous.completed) if previous else {}
        self.records: list[StepRecord] = []

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class StepRuntime:
    """Handle an executor gets back into the engine while running one step."""

    def __init__(
        self,
        engine: "WorkflowEngine",
        run: RunState,
        step: Step,
        context: ExecutionContext,
        scope: str,
        call_stack: tuple[str, ...],
        depth: int,
    ):
        self.engine = engine
        self.run = run
        self.step = step
        self.context = context
        self.scope = scope
        self.path = f"{scope}{step.id}"
        self.call_stack = call_stack
        self.depth = depth
        self.details: dict[str, Any] = {}

    @property
    def settings(self) -> RuntimeConfig:
        return self.engine.settings

    @property
    def timeout(self) -> float | None:
        if self.step.timeout is not None:
            return self.step.timeout or None
        return self.settings.timeout

    async def run_nested(self, steps: list[Step], context: ExecutionContext, scope: str) -> ExecutionResult:
        return await self.engine.run_steps(
            steps, context, self.run, scope=scope, call_stack=self.call_stack, depth=self.depth
        )

    def propagate(self, result: ExecutionResult, output: Any = None) -> Suspend:
        """Turn a non-successful nested result into this step's outcome."""
        if result.status == RunStatus.FAILED:
            raise NestedRunFailed(result.error)
        return Suspend(list(result.suspended), output=output)

    async def call_external(self, awaitable: Awaitable, what: str) -> Any:
        timeout = self.timeout
        if not timeout:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise StepTimeoutError(
                f"Step '{self.step.id}' timed out after {timeout}s waiting for {what}",
                self.step.id,
            )

    async def emit(self, event_type: EventType, **fields: Any):
        await self.engine.emit(
            TraceEvent(
                event_type=event_type,
                run_id=self.run.run_id,
                step_id=self.step.id,
                step_type=self.step.type,
                path=self.path,
                **fields,
            )
        )


class WorkflowEngine:

    def __init__(
        self,
        agents: AgentInvoker | None = None,
        tools: ToolInvoker | None = None,
        workflows: WorkflowLookup | None = None,
        executors: ExecutorRegistry | None = None,
        settings: RuntimeConfig | dict | None = None,
        tracer: Tracer | None = None,
        event_bus: EventBus | None = None,
        env: dict[str, str] | None = None,
    ):
        self.agents = agents
        self.tools = tools
        self.workflows = workflows
        self.executors = executors or default_registry()
        if isinstance(settings, RuntimeConfig):
            self.settings = settings
        else:
            self.settings = RuntimeConfig.model_validate(settings or {})
        self.tracer = tracer or Tracer()
        self.event_bus = event_bus or EventBus()
        self.env = env

    async def emit(self, event: TraceEvent):
        self.tracer.record(event)
        await self.event_bus.emit(event)

    def validate(self, definition: WorkflowDefinition):
        """Reject unknown step types, duplicate ids and reserved ids before anything runs."""
        self._validate_steps(definition.steps)

    def _validate_steps(self, steps: list[Step]):
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                raise DefinitionError(f"Duplicate step id '{step.id}'", step.id)
            seen.add(step.id)
            if step.id in RESERVED_NAMES:
                raise DefinitionError(f"Step id '{step.id}' is reserved", step.id)
            if step.type not in self.executors:
                raise DefinitionError(
                    f"Unknown step type '{step.type}' for step '{step.id}'. "
                    f"Available: {self.executors.types()}",
                    step.id,
                )
            for nested in child_step_lists(step):
                self._validate_steps(nested)

    async def run_steps(
        self,
        steps: list[Step],
        context: ExecutionContext,
        run: RunState,
        scope: str = "",
        call_stack: tuple[str, ...] = (),
        depth: int = 0,
    ) -> ExecutionResult:
        last_output: Any = None

        for step in steps:
            path = f"{scope}{step.id}"

            if run.cancelled:
                return ExecutionResult(
                    status=RunStatus.FAILED,
                    output=last_output,
                    error=StepError(step.id, f"Run cancelled before step '{step.id}'", ErrorKind.CANCELLED),
                )

            # Replayed from an earlier suspension
            if path in run.completed:
                output = run.completed[path]
                context.steps[step.id] = output
                last_output = output
                run.records.append(
                    StepRecord(step_id=step.id, step_type=step.type, path=path, status="skipped",
                               step_name=step.name, output=output)
                )
                await self.emit(
                    TraceEvent(event_type=EventType.STEP_SKIPPED, run_id=run.run_id, step_id=step.id,
                               step_type=step.type, path=path)
                )
                continue

            handler = self.executors.get(step.type)
            runtime = StepRuntime(self, run, step, context, scope, call_stack, depth)
            record = StepRecord(
                step_id=step.id,
                step_type=step.type,
                path=path,
                status="running",
                step_name=step.name,
                started_at=datetime.now(),
                details=runtime.details,
            )
            await runtime.emit(EventType.STEP_START, data={"name": step.name})
            _log.debug("Step %s (%s) started", path, step.type)

            step_start = time.time()
            error: StepError | None = None
            outcome: Any = None
            try:
                if handler is None:
                    raise DefinitionError(f"Unknown step type '{step.type}' for step '{step.id}'", step.id)
                resolved_input = resolve_input_mapping(step.input_mapping, context)
                record.input = resolved_input
                outcome = await handler(step, resolved_input, runtime)
            except NestedRunFailed as e:
                error = e.error
            except WorkflowError as e:
                error = StepError(e.step_id or step.id, e.message, e.kind)
            except asyncio.TimeoutError:
                error = StepError(step.id, f"Step '{step.id}' timed out", ErrorKind.TIMEOUT)
            except Exception as e:
                _log.debug("Step %s raised", path, exc_info=True)
                error = StepError(step.id, str(e) or type(e).__name__, ErrorKind.EXECUTION)

            record.completed_at = datetime.now()
            record.duration_ms = (time.time() - step_start) * 1000

            if error is not None:
                record.status = "failed"
                record.error = error.message
                run.records.append(record)
                await runtime.emit(
                    EventType.STEP_FAILED,
                    data={"error": error.message, "kind": error.kind.value, "failed_step": error.step},
                    duration_ms=record.duration_ms,
                )
                _log.warning("Step %s failed: %s", path, error.message)
                return ExecutionResult(status=RunStatus.FAILED, output=last_output, error=error)

            if isinstance(outcome, Suspend):
                record.status = "suspended"
                record.output = outcome.output
                run.records.append(record)
                await runtime.emit(
                    EventType.STEP_SUSPENDED,
                    data={"suspended": [s.path for s in outcome.suspended]},
                    duration_ms=record.duration_ms,
                )
                _log.info("Step %s suspended (%d pending)", path, len(outcome.suspended))
                return ExecutionResult(
                    status=RunStatus.SUSPENDED,
                    output=last_output,
                    suspended=list(outcome.suspended),
                )

            context.steps[step.id] = outcome
            run.completed[path] = outcome
            last_output = outcome
            record.status = "completed"
            record.output = outcome
            run.records.append(record)
            await runtime.emit(EventType.STEP_END, duration_ms=record.duration_ms)

        return ExecutionResult(status=RunStatus.SUCCESS, output=last_output)

    async def execute(
        self,
        definition: WorkflowDefinition | dict,
        input: Any = None,
        *,
        resume: ResumeInput | dict | None = None,
        resume_state: SuspensionState | dict | None = None,
        cancel_event: asyncio.Event | None = None,
        run_id: str | None = None,
    ) -> ExecutionResult:
        start = time.time()
        run_id = run_id or uuid.uuid4().hex[:12]
        if isinstance(resume, dict):
            resume = ResumeInput(step=resume["step"], data=resume.get("data"))
        if isinstance(resume_state, dict):
            resume_state = SuspensionState.from_dict(resume_state)
        if input is None and resume_state is not None:
            input = resume_state.input

        await self.emit(TraceEvent(event_type=EventType.RUN_START, run_id=run_id,
                                   data={"resumed": resume_state is not None}))
        _log.info("Run %s started%s", run_id, " (resumed)" if resume_state else "")

        try:
            definition = WorkflowDefinition.from_dict(definition)
            self.validate(definition)
        except DefinitionError as e:
            result = ExecutionResult(
                status=RunStatus.FAILED,
                error=StepError(e.step_id, e.message, ErrorKind.DEFINITION),
            )
            await self.emit(TraceEvent(event_type=EventType.ERROR, run_id=run_id, step_id=e.step_id or "",
                                       data={"error": e.message}))
            return await self._finish(result, run_id, start)

        run = RunState(run_id, resume=resume, previous=resume_state, cancel_event=cancel_event)
        context = ExecutionContext(input=input, env=curated_env(self.env))
        call_stack = (definition.id,) if definition.id else ()

        result = await self.run_steps(definition.steps, context, run, call_stack=call_stack)

        if result.status == RunStatus.SUCCESS and definition.output_mapping:
            try:
                result.output = resolve_value(definition.output_mapping, context)
            except WorkflowError as e:
                result = ExecutionResult(
                    status=RunStatus.FAILED,
                    error=StepError(e.step_id, f"outputMapping: {e.message}", e.kind),
                )

        result.steps = run.records
        if result.status == RunStatus.SUSPENDED:
            result.state = SuspensionState(
                input=input,
                completed=dict(run.completed),
                suspended=list(result.suspended),
            )
        return await self._finish(result, run_id, start)

    async def _finish(self, result: ExecutionResult, run_id: str, start: float) -> ExecutionResult:
        result.run_id = run_id
        result.duration = time.time() - start
        await self.emit(
            TraceEvent(
                event_type=EventType.RUN_END,
                run_id=run_id,
                data={"status": result.status.value,
                      "error": result.error.to_dict() if result.error else None},
                duration_ms=result.duration * 1000,
            )
        )
        _log.info("Run %s finished: %s (%.2fs)", run_id, result.status.value, result.duration)
        return result


async def execute_workflow_definition(
    definition: WorkflowDefinition | dict,
    input: Any = None,
    *,
    resume: ResumeInput | dict | None = None,
    resume_state: SuspensionState | dict | None = None,
    cancel_event: asyncio.Event | None = None,
    run_id: str | None = None,
    **engine_options: Any,
) -> ExecutionResult:
    """One-shot entry point: build an engine from ``engine_options`` and run ``definition``."""
    engine = WorkflowEngine(**engine_options)
    return await engine.execute(
        definition,
        input,
        resume=resume,
        resume_state=resume_state,
        cancel_event=cancel_event,
        run_id=run_id,
    )


def run_workflow(definition: WorkflowDefinition | dict, input: Any = None, **kwargs: Any) -> ExecutionResult:
    """Synchronous wrapper around ``execute_workflow_definition``."""
    return asyncio.run(execute_workflow_definition(definition, input, **kwargs))
