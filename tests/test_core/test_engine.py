"""Tests for the workflow engine: sequencing, suspension, failures and lifecycle events."""

from __future__ import annotations

import asyncio
import json

import pytest
from unittest.mock import AsyncMock

from stepforge.core.engine import WorkflowEngine, execute_workflow_definition, run_workflow
from stepforge.core.errors import ErrorKind
from stepforge.core.executors import ExecutorRegistry, default_registry
from stepforge.core.result import ResumeInput, RunStatus, SuspensionState
from stepforge.observe.tracer import EventType


def transform(step_id, mapping=None):
    return {"id": step_id, "type": "transform", "inputMapping": mapping or {}}


def tool(step_id, tool_id, mapping=None, **extra):
    return {"id": step_id, "type": "tool", "inputMapping": mapping or {}, "config": {"toolId": tool_id}, **extra}


def human(step_id, mapping=None):
    return {"id": step_id, "type": "human", "inputMapping": mapping or {}, "config": {"prompt": "Approve?"}}


class TestConcreteScenarios:
    @pytest.mark.asyncio
    async def test_single_transform(self):
        result = await execute_workflow_definition(
            {"steps": [transform("transform", {"value": "{{input.value}}"})]},
            {"value": 42},
        )
        assert result.status == RunStatus.SUCCESS
        assert result.output == {"value": 42}
        assert result.to_dict()["status"] == "success"
        assert result.to_dict()["output"] == {"value": 42}
        assert "error" not in result.to_dict()

    @pytest.mark.asyncio
    async def test_branch_on_flag(self):
        definition = {
            "steps": [
                {
                    "id": "route",
                    "type": "branch",
                    "config": {
                        "branches": [
                            {
                                "id": "yes",
                                "condition": "input.flag === true",
                                "steps": [transform("answer", {"result": "yes"})],
                            }
                        ]
                    },
                }
            ]
        }
        result = await execute_workflow_definition(definition, {"flag": True})
        assert result.status == RunStatus.SUCCESS
        assert result.output == {"branchId": "yes", "result": {"result": "yes"}}

    def test_sync_wrapper(self):
        result = run_workflow({"steps": [transform("t", {"a": 1})]})
        assert result.success
        assert result.output == {"a": 1}


class TestSequencing:
    @pytest.mark.asyncio
    async def test_transform_is_idempotent(self, engine):
        definition = {"steps": [transform("t", {"x": "{{input.x}}", "y": ["{{input.x}}"]})]}
        first = await engine.execute(definition, {"x": 3})
        second = await engine.execute(definition, {"x": 3})
        assert first.output == second.output == {"x": 3, "y": [3]}

    @pytest.mark.asyncio
    async def test_later_steps_see_earlier_outputs(self, engine):
        definition = {
            "steps": [
                transform("first", {"n": "{{input.n}}"}),
                transform("second", {"doubled": "{{first.n * 2}}", "same": "{{steps.first.n}}"}),
            ]
        }
        result = await engine.execute(definition, {"n": 4})
        assert result.output == {"doubled": 8, "same": 4}

    @pytest.mark.asyncio
    async def test_hyphenated_step_ids(self, engine):
        definition = {
            "steps": [
                transform("fetch-data", {"value": "{{input.value}}"}),
                transform(
                    "use",
                    {
                        "a": "{{steps.fetch-data.value}}",
                        "b": "{{fetch-data.value}}",
                        "c": "{{steps['fetch-data'].value}}",
                        "label": "got {{fetch-data.value}}",
                    },
                ),
            ]
        }
        result = await engine.execute(definition, {"value": 42})
        assert result.status == RunStatus.SUCCESS
        assert result.output == {"a": 42, "b": 42, "c": 42, "label": "got 42"}

    @pytest.mark.asyncio
    async def test_subtraction_still_evaluates(self, engine):
        definition = {"steps": [transform("t", {"less": "{{input.n-1}}", "diff": "{{input.n-input.m}}"})]}
        result = await engine.execute(definition, {"n": 5, "m": 2})
        assert result.output == {"less": 4, "diff": 3}

    @pytest.mark.asyncio
    async def test_later_sibling_is_not_visible(self, engine):
        definition = {
            "steps": [
                transform("a", {"early": "{{b.x}}", "scoped": "{{steps.b.x}}"}),
                transform("b", {"x": 1}),
            ]
        }
        result = await engine.execute(definition)
        assert result.status == RunStatus.SUCCESS
        assert result.steps[0].output == {"early": None, "scoped": None}
        assert result.output == {"x": 1}

    @pytest.mark.asyncio
    async def test_output_mapping(self, engine):
        definition = {
            "steps": [transform("a", {"v": 1}), transform("b", {"v": 2})],
            "outputMapping": {"first": "{{a.v}}", "second": "{{b.v}}"},
        }
        result = await engine.execute(definition)
        assert result.output == {"first": 1, "second": 2}

    @pytest.mark.asyncio
    async def test_empty_workflow(self, engine):
        result = await engine.execute({"steps": []})
        assert result.status == RunStatus.SUCCESS
        assert result.output is None

    @pytest.mark.asyncio
    async def test_step_records(self, engine):
        result = await engine.execute({"steps": [transform("a", {"v": 1})]})
        assert len(result.steps) == 1
        record = result.steps[0]
        assert record.status == "completed"
        assert record.path == "a"
        assert record.output == {"v": 1}
        assert result.run_id
        assert result.duration >= 0


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_type_fails_before_running(self, engine, mock_tools):
        definition = {"steps": [tool("call", "echo"), {"id": "warp", "type": "teleport"}]}
        result = await engine.execute(definition)
        assert result.status == RunStatus.FAILED
        assert result.error.kind == ErrorKind.DEFINITION
        assert result.error.step == "warp"
        mock_tools.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_ids(self, engine):
        result = await engine.execute({"steps": [transform("a"), transform("a")]})
        assert result.error.kind == ErrorKind.DEFINITION
        assert result.error.step == "a"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reserved", ["input", "steps", "variables", "env"])
    async def test_reserved_ids(self, engine, reserved):
        result = await engine.execute({"steps": [transform("ok"), transform(reserved, {"v": 1})]})
        assert result.status == RunStatus.FAILED
        assert result.error.kind == ErrorKind.DEFINITION
        assert result.error.step == reserved
        assert result.steps == []

    @pytest.mark.asyncio
    async def test_reserved_id_inside_nested_steps(self, engine):
        definition = {
            "steps": [
                {
                    "id": "loop",
                    "type": "foreach",
                    "config": {"collectionPath": "input.items", "steps": [transform("env")]},
                }
            ]
        }
        result = await engine.execute(definition, {"items": [1]})
        assert result.error.kind == ErrorKind.DEFINITION
        assert result.error.step == "env"

    @pytest.mark.asyncio
    async def test_invalid_config(self, engine):
        result = await engine.execute({"steps": [{"id": "ask", "type": "agent", "config": {}}]})
        assert result.status == RunStatus.FAILED
        assert result.error.kind == ErrorKind.DEFINITION
        assert result.error.step == "ask"

    @pytest.mark.asyncio
    async def test_custom_executor(self, mock_agents):
        registry = default_registry()

        @registry.register("shout")
        async def shout(step, resolved_input, runtime):
            return {"text": str(resolved_input["text"]).upper()}

        engine = WorkflowEngine(executors=registry)
        result = await engine.execute(
            {"steps": [{"id": "s", "type": "shout", "inputMapping": {"text": "{{input}}"}}]}, "hi"
        )
        assert result.output == {"text": "HI"}
        assert "shout" not in default_registry()


class TestSuspension:
    @pytest.mark.asyncio
    async def test_round_trip(self, engine, mock_tools):
        definition = {
            "steps": [
                tool("fetch", "crm", {"id": "{{input.id}}"}),
                human("approve", {"customer": "{{fetch.args.id}}"}),
                transform("done", {"approved": "{{approve.approved}}", "id": "{{fetch.args.id}}"}),
            ]
        }
        first = await engine.execute(definition, {"id": "c-1"})
        assert first.status == RunStatus.SUSPENDED
        assert len(first.suspended) == 1
        assert first.suspended[0].step == "approve"
        assert first.suspended[0].data == {"customer": "c-1"}
        assert first.state.completed["fetch"] == {"tool": "crm", "args": {"id": "c-1"}}

        # Persist through JSON, as a caller would
        state = SuspensionState.from_dict(json.loads(json.dumps(first.state.to_dict())))
        second = await engine.execute(
            definition,
            resume=ResumeInput(step="approve", data={"approved": True}),
            resume_state=state,
        )
        assert second.status == RunStatus.SUCCESS
        assert second.output == {"approved": True, "id": "c-1"}
        assert mock_tools.invoke.await_count == 1
        assert [r.status for r in second.steps] == ["skipped", "completed", "completed"]

    @pytest.mark.asyncio
    async def test_resume_with_dicts(self, engine):
        definition = {"steps": [human("gate"), transform("after", {"v": "{{gate.v}}"})]}
        first = await engine.execute(definition, {"q": 1})
        second = await engine.execute(
            definition,
            resume={"step": "gate", "data": {"v": 9}},
            resume_state=first.to_dict()["state"],
        )
        assert second.output == {"v": 9}

    @pytest.mark.asyncio
    async def test_input_restored_from_state(self, engine):
        definition = {"steps": [human("gate"), transform("after", {"q": "{{input.q}}"})]}
        first = await engine.execute(definition, {"q": 7})
        second = await engine.execute(definition, resume=ResumeInput("gate", {}), resume_state=first.state)
        assert second.output == {"q": 7}

    @pytest.mark.asyncio
    async def test_steps_after_suspension_do_not_run(self, engine, mock_tools):
        definition = {"steps": [human("gate"), tool("after", "crm")]}
        result = await engine.execute(definition)
        assert result.status == RunStatus.SUSPENDED
        mock_tools.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_suspended_dict_shape(self, engine):
        result = await engine.execute({"steps": [human("gate", {"x": 1})]})
        data = result.to_dict()
        assert data["status"] == "suspended"
        assert data["suspended"][0]["step"] == "gate"
        assert data["suspended"][0]["data"] == {"x": 1}
        assert data["state"]["suspended"][0]["path"] == "gate"


class TestFailures:
    @pytest.mark.asyncio
    async def test_innermost_step_named_through_nesting(self, engine, mock_tools):
        async def invoke(tool_id, args):
            if tool_id == "explode":
                raise RuntimeError("boom")
            return args

        mock_tools.invoke = AsyncMock(side_effect=invoke)
        definition = {
            "steps": [
                {
                    "id": "route",
                    "type": "branch",
                    "config": {
                        "branches": [
                            {
                                "id": "always",
                                "condition": "true",
                                "steps": [
                                    {
                                        "id": "fan",
                                        "type": "parallel",
                                        "config": {
                                            "branches": [
                                                {"id": "left", "steps": [transform("calm", {"ok": True})]},
                                                {
                                                    "id": "right",
                                                    "steps": [
                                                        {
                                                            "id": "loop",
                                                            "type": "foreach",
                                                            "config": {
                                                                "collectionPath": "input.items",
                                                                "steps": [tool("explode", "explode")],
                                                            },
                                                        }
                                                    ],
                                                },
                                            ]
                                        },
                                    }
                                ],
                            }
                        ]
                    },
                }
            ]
        }
        result = await engine.execute(definition, {"items": [1, 2]})
        assert result.status == RunStatus.FAILED
        assert result.error.step == "explode"
        assert result.error.message == "boom"
        assert result.error.kind == ErrorKind.EXECUTION
        failed_paths = [r.path for r in result.steps if r.status == "failed"]
        assert failed_paths[0] == "route/fan/right/loop/0/explode"

    @pytest.mark.asyncio
    async def test_failure_stops_run(self, engine, mock_tools):
        mock_tools.invoke = AsyncMock(side_effect=ValueError("bad input"))
        result = await engine.execute({"steps": [tool("a", "x"), transform("b")]})
        assert result.error.step == "a"
        assert result.error.message == "bad input"
        assert [r.step_id for r in result.steps] == ["a"]

    @pytest.mark.asyncio
    async def test_expression_error_in_mapping(self, engine):
        result = await engine.execute({"steps": [transform("a", {"x": "{{open('f')}}"})]})
        assert result.error.kind == ErrorKind.EXPRESSION
        assert result.error.step == "a"

    @pytest.mark.asyncio
    async def test_timeout(self, mock_tools):
        async def slow(tool_id, args):
            await asyncio.sleep(5)

        mock_tools.invoke = AsyncMock(side_effect=slow)
        engine = WorkflowEngine(tools=mock_tools)
        result = await engine.execute({"steps": [tool("slow", "sleepy", timeout=0.05)]})
        assert result.status == RunStatus.FAILED
        assert result.error.kind == ErrorKind.TIMEOUT
        assert result.error.step == "slow"

    @pytest.mark.asyncio
    async def test_engine_wide_timeout(self, mock_tools):
        async def slow(tool_id, args):
            await asyncio.sleep(5)

        mock_tools.invoke = AsyncMock(side_effect=slow)
        engine = WorkflowEngine(tools=mock_tools, settings={"timeout": 0.05})
        result = await engine.execute({"steps": [tool("slow", "sleepy")]})
        assert result.error.kind == ErrorKind.TIMEOUT


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, engine):
        event = asyncio.Event()
        event.set()
        result = await engine.execute({"steps": [transform("a")]}, cancel_event=event)
        assert result.status == RunStatus.FAILED
        assert result.error.kind == ErrorKind.CANCELLED
        assert result.error.step == "a"
        assert result.steps == []

    @pytest.mark.asyncio
    async def test_cancelled_between_steps(self, engine, mock_tools):
        event = asyncio.Event()

        async def invoke(tool_id, args):
            event.set()
            return {}

        mock_tools.invoke = AsyncMock(side_effect=invoke)
        result = await engine.execute(
            {"steps": [tool("first", "x"), transform("second"), transform("third")]},
            cancel_event=event,
        )
        assert result.error.kind == ErrorKind.CANCELLED
        assert result.error.step == "second"
        assert [r.step_id for r in result.steps] == ["first"]

    @pytest.mark.asyncio
    async def test_cancelled_inside_loop(self, engine, mock_tools):
        event = asyncio.Event()

        async def invoke(tool_id, args):
            event.set()
            return {}

        mock_tools.invoke = AsyncMock(side_effect=invoke)
        definition = {
            "steps": [
                {"id": "loop", "type": "foreach",
                 "config": {"collectionPath": "input", "steps": [tool("work", "x")]}}
            ]
        }
        result = await engine.execute(definition, [1, 2, 3], cancel_event=event)
        assert result.error.kind == ErrorKind.CANCELLED
        assert result.error.step == "work"
        assert mock_tools.invoke.await_count == 1


class TestEvents:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self, engine, tracer, event_bus):
        seen = []
        event_bus.subscribe_sync(lambda e: seen.append(e.event_type))
        result = await engine.execute({"steps": [transform("a"), human("gate")]})

        timeline = [e["event_type"] for e in tracer.get_timeline(result.run_id)]
        assert timeline == ["run_start", "step_start", "step_end", "step_start", "step_suspended", "run_end"]
        assert seen[0] == EventType.RUN_START
        assert seen[-1] == EventType.RUN_END

    @pytest.mark.asyncio
    async def test_failed_event_carries_error(self, engine, tracer, mock_tools):
        mock_tools.invoke = AsyncMock(side_effect=RuntimeError("nope"))
        result = await engine.execute({"steps": [tool("a", "x")]})
        failed = [e for e in tracer.get_timeline(result.run_id) if e["event_type"] == "step_failed"]
        assert failed[0]["data"]["error"] == "nope"
        assert failed[0]["step_id"] == "a"

    @pytest.mark.asyncio
    async def test_registry_helpers(self):
        registry = ExecutorRegistry()

        async def noop(step, resolved_input, runtime):
            return None

        registry.register("noop", noop)
        assert "noop" in registry
        assert registry.types() == ["noop"]
        copy = registry.copy()
        registry.unregister("noop")
        assert "noop" in copy
        assert registry.get("noop") is None
