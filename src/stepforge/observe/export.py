"""Trace export utilities."""

from __future__ import annotations

from pathlib import Path

from stepforge.observe.tracer import Tracer


def export_trace_json(tracer: Tracer, path: str | Path):
    tracer.export_json(str(path))


def export_trace_dict(tracer: Tracer, run_id: str | None = None) -> dict:
    return {
        "start_time": tracer.start_time,
        "duration": tracer.elapsed(),
        "events": tracer.get_timeline(run_id),
        "cost_breakdown": tracer.get_cost_breakdown(run_id),
    }
