"""Execution tracing for observability and replay."""

from __future__ import annotations

import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class EventType(str, Enum):
    RUN_START = "run_start"
    RUN_END = "run_end"
    STEP_START = "step_start"
    STEP_END = "step_end"
    STEP_FAILED = "step_failed"
    STEP_SUSPENDED = "step_suspended"
    STEP_SKIPPED = "step_skipped"
    AGENT_CALL = "agent_call"
    TOOL_CALL = "tool_call"
    ERROR = "error"


@dataclass
class TraceEvent:
    event_type: EventType
    timestamp: float = field(default_factory=time.time)
    run_id: str = ""
    step_id: str = ""
    step_type: str = ""
    path: str = ""
    data: dict = field(default_factory=dict)
    tokens: dict = field(default_factory=dict)
    cost: float = 0.0
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "run_id": self.run_id,
            "step_id": self.step_id,
            "step_type": self.step_type,
            "path": self.path,
            "data": self.data,
            "tokens": self.tokens,
            "cost": self.cost,
            "duration_ms": self.duration_ms,
        }


class Tracer:
    """Keeps the most recent ``max_events`` events; older ones are dropped first."""

    def __init__(self, enabled: bool = True, max_events: int | None = 10_000):
        self.enabled = enabled
        self.events: deque[TraceEvent] = deque(maxlen=max_events)
        self.start_time: float = 0.0
        self._lock = threading.Lock()

    def record(self, event: TraceEvent):
        if not self.enabled:
            return
        with self._lock:
            self.events.append(event)

    def start(self):
        self.start_time = time.time()

    def elapsed(self) -> float:
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    def get_timeline(self, run_id: str | None = None) -> list[dict]:
        with self._lock:
            events = list(self.events)
        return [e.to_dict() for e in events if run_id is None or e.run_id == run_id]

    def get_cost_breakdown(self, run_id: str | None = None) -> dict:
        total_cost = 0.0
        total_input = 0
        total_output = 0
        by_agent: dict[str, dict] = {}
        by_step: dict[str, dict] = {}

        with self._lock:
            events = list(self.events)

        for e in events:
            if run_id is not None and e.run_id != run_id:
                continue
            if e.cost <= 0 and not e.tokens:
                continue

            total_cost += e.cost
            inp = e.tokens.get("input", 0)
            out = e.tokens.get("output", 0)
            total_input += inp
            total_output += out

            agent = e.data.get("agent_slug")
            if agent:
                entry = by_agent.setdefault(agent, {"cost": 0.0, "tokens": {"input": 0, "output": 0}})
                entry["cost"] += e.cost
                entry["tokens"]["input"] += inp
                entry["tokens"]["output"] += out

            if e.step_id:
                entry = by_step.setdefault(e.step_id, {"cost": 0.0, "tokens": {"input": 0, "output": 0}})
                entry["cost"] += e.cost
                entry["tokens"]["input"] += inp
                entry["tokens"]["output"] += out

        return {
            "total_cost": total_cost,
            "total_tokens": {"input": total_input, "output": total_output},
            "by_agent": by_agent,
            "by_step": by_step,
        }

    def export_json(self, path: str):
        data = {
            "start_time": self.start_time,
            "duration": self.elapsed(),
            "events": self.get_timeline(),
            "cost_breakdown": self.get_cost_breakdown(),
        }
        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(data, indent=2, default=str))

    def clear(self, run_id: str | None = None):
        with self._lock:
            if run_id is None:
                self.events.clear()
                return
            kept = [e for e in self.events if e.run_id != run_id]
            self.events.clear()
            self.events.extend(kept)
