"""REST routes: start, resume, inspect and cancel runs."""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from stepforge.core.engine import WorkflowEngine
from stepforge.core.errors import ErrorKind
from stepforge.core.result import ExecutionResult, ResumeInput, RunStatus
from stepforge.observe.export import export_trace_dict
from stepforge.store.base import RunNotFoundError, RunRecord, RunStore


class RunRequest(BaseModel):
    definition: dict
    input: Any = None
    run_id: Optional[str] = None


class ResumeRequest(BaseModel):
    step: str
    data: Any = None


def status_code_for(result: ExecutionResult) -> int:
    if result.status != RunStatus.FAILED:
        return 200
    kind = result.error.kind if result.error else ErrorKind.EXECUTION
    if kind == ErrorKind.DEFINITION:
        return 400
    if kind == ErrorKind.CANCELLED:
        return 409
    return 422


def create_routes(engine: WorkflowEngine, store: RunStore) -> APIRouter:
    router = APIRouter(prefix="/api")
    active: dict[str, asyncio.Event] = {}

    async def _execute(record_definition: dict, input: Any, run_id: str, **kwargs: Any) -> JSONResponse:
        cancel_event = asyncio.Event()
        active[run_id] = cancel_event
        try:
            result = await engine.execute(
                record_definition, input, run_id=run_id, cancel_event=cancel_event, **kwargs
            )
        finally:
            active.pop(run_id, None)
        await store.save(RunRecord.from_result(record_definition, input, result))
        return JSONResponse(status_code=status_code_for(result), content=_json_safe(result.to_dict()))

    async def _load(run_id: str) -> RunRecord:
        try:
            return await store.get(run_id)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @router.post("/runs")
    async def start_run(request: RunRequest):
        run_id = request.run_id or uuid.uuid4().hex[:12]
        if run_id in active:
            raise HTTPException(status_code=409, detail=f"Run '{run_id}' is already running")
        return await _execute(request.definition, request.input, run_id)

    @router.post("/runs/{run_id}/resume")
    async def resume_run(run_id: str, request: ResumeRequest):
        record = await _load(run_id)
        if run_id in active:
            raise HTTPException(status_code=409, detail=f"Run '{run_id}' is already running")
        if record.status != RunStatus.SUSPENDED.value:
            raise HTTPException(
                status_code=409,
                detail=f"Run '{run_id}' is {record.status}, only suspended runs can be resumed",
            )
        return await _execute(
            record.definition,
            record.input,
            run_id,
            resume=ResumeInput(step=request.step, data=request.data),
            resume_state=record.suspension_state(),
        )

    @router.post("/runs/{run_id}/cancel", status_code=202)
    async def cancel_run(run_id: str):
        event = active.get(run_id)
        if event is None:
            raise HTTPException(status_code=404, detail=f"Run '{run_id}' is not running")
        event.set()
        return {"status": "cancelling", "run_id": run_id}

    @router.get("/runs")
    async def list_runs(status: Optional[str] = None, limit: int = 50):
        records = await store.list(status=status, limit=limit)
        return {"runs": [_summary(r) for r in records]}

    @router.get("/runs/{run_id}")
    async def get_run(run_id: str):
        record = await _load(run_id)
        return _json_safe(record.to_dict())

    @router.get("/trace")
    async def get_trace(run_id: Optional[str] = None):
        return _json_safe(export_trace_dict(engine.tracer, run_id))

    return router


def _summary(record: RunRecord) -> dict:
    return {
        "run_id": record.run_id,
        "status": record.status,
        "error": record.error,
        "suspended": record.suspended,
        "updated_at": record.updated_at,
    }


def _json_safe(data: Any) -> Any:
    return json.loads(json.dumps(data, default=str))
