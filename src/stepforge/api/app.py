"""FastAPI application exposing the workflow engine over HTTP."""

from __future__ import annotations

from fastapi import FastAPI

from stepforge._version import __version__
from stepforge.api.routes import create_routes
from stepforge.core.engine import WorkflowEngine
from stepforge.store.base import RunStore
from stepforge.store.memory import InMemoryRunStore


def create_app(engine: WorkflowEngine | None = None, store: RunStore | None = None) -> FastAPI:
    engine = engine or WorkflowEngine()
    store = store or InMemoryRunStore()

    app = FastAPI(
        title="StepForge",
        description="Declarative workflow execution with suspension and resume",
        version=__version__,
    )
    app.state.engine = engine
    app.state.store = store
    app.include_router(create_routes(engine, store))

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__, "step_types": engine.executors.types()}

    return app
