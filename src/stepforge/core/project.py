"""Project facade: builds an engine and its collaborators from a config file."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from pathlib import Path
from typing import Any, Union

from stepforge.agents.invoker import LLMAgentInvoker
from stepforge.config.loader import ConfigLoader
from stepforge.config.schema import ProjectConfig
from stepforge.core.definition import WorkflowDefinition
from stepforge.core.engine import WorkflowEngine
from stepforge.core.interfaces import InMemoryWorkflowLookup
from stepforge.core.result import ExecutionResult, ResumeInput, RunStatus
from stepforge.llm.router import LLMRouter
from stepforge.observe.events import EventBus
from stepforge.observe.tracer import Tracer
from stepforge.store.base import RunRecord, RunStore
from stepforge.store.memory import InMemoryRunStore
from stepforge.store.sqlite import SqliteRunStore
from stepforge.tools.registry import ToolRegistry

_log = logging.getLogger(__name__)


def definition_to_dict(definition: WorkflowDefinition) -> dict:
    return definition.model_dump(mode="json", by_alias=True, exclude_none=True)


def _run_sync(coro):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


class Project:
    """
    Usage::

        project = Project.from_yaml("stepforge.yaml")
        result = project.run({"ticket": "T-1"})
        if result.status == RunStatus.SUSPENDED:
            result = project.resume(result.run_id, "approve", {"approved": True})
    """

    def __init__(
        self,
        config: ProjectConfig,
        *,
        store: RunStore | None = None,
        tools: ToolRegistry | None = None,
        base_dir: Union[str, Path, None] = None,
    ):
        self.config = config
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()
        self.tracer = Tracer(enabled=config.observe.trace, max_events=config.observe.max_trace_events)
        self.event_bus = EventBus()
        self.llm_router = LLMRouter(default_model=config.llm, cost_tracking=config.observe.cost_tracking)

        self.tools = tools or ToolRegistry()
        for module_path in config.tools:
            path = Path(module_path)
            self.tools.load_module(path if path.is_absolute() else self.base_dir / path)

        self.agents = LLMAgentInvoker(config.agents, self.llm_router, self.tools)
        self.workflows = InMemoryWorkflowLookup(config.workflows)
        if config.workflow.id:
            self.workflows.register(config.workflow.id, config.workflow)

        self.store = store or self._build_store()
        self.engine = WorkflowEngine(
            agents=self.agents,
            tools=self.tools,
            workflows=self.workflows,
            settings=config.runtime,
            tracer=self.tracer,
            event_bus=self.event_bus,
        )

    def _build_store(self) -> RunStore:
        if self.config.store.backend == "sqlite":
            path = Path(self.config.store.path)
            return SqliteRunStore(str(path if path.is_absolute() else self.base_dir / path))
        return InMemoryRunStore()

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **kwargs: Any) -> "Project":
        kwargs.setdefault("base_dir", Path(path).resolve().parent)
        return cls(ConfigLoader.load(path), **kwargs)

    @classmethod
    def from_dict(cls, config: dict, **kwargs: Any) -> "Project":
        return cls(ConfigLoader.validate(config), **kwargs)

    @property
    def workflow(self) -> WorkflowDefinition:
        return self.config.workflow

    async def arun(
        self,
        input: Any = None,
        *,
        run_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        self.tracer.start()
        result = await self.engine.execute(self.workflow, input, run_id=run_id, cancel_event=cancel_event)
        await self.store.save(RunRecord.from_result(definition_to_dict(self.workflow), input, result))
        return result

    async def aresume(
        self,
        run_id: str,
        step: str,
        data: Any = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        record = await self.store.get(run_id)
        if record.status != RunStatus.SUSPENDED.value:
            raise ValueError(f"Run '{run_id}' is {record.status}, only suspended runs can be resumed")

        self.tracer.start()
        result = await self.engine.execute(
            record.definition,
            record.input,
            resume=ResumeInput(step=step, data=data),
            resume_state=record.suspension_state(),
            cancel_event=cancel_event,
            run_id=run_id,
        )
        await self.store.save(RunRecord.from_result(record.definition, record.input, result))
        _log.info("Run %s resumed at '%s': %s", run_id, step, result.status.value)
        return result

    def run(self, input: Any = None, **kwargs: Any) -> ExecutionResult:
        """Synchronous entry point. Wraps ``arun()``."""
        return _run_sync(self.arun(input, **kwargs))

    def resume(self, run_id: str, step: str, data: Any = None, **kwargs: Any) -> ExecutionResult:
        """Synchronous entry point. Wraps ``aresume()``."""
        return _run_sync(self.aresume(run_id, step, data, **kwargs))
