"""Process-local run store."""

from __future__ import annotations

import asyncio
import copy

from stepforge.store.base import RunNotFoundError, RunRecord, RunStore, _now


class InMemoryRunStore(RunStore):

    def __init__(self):
        self._runs: dict[str, RunRecord] = {}
        self._lock = asyncio.Lock()

    async def save(self, record: RunRecord) -> None:
        async with self._lock:
            existing = self._runs.get(record.run_id)
            if existing is not None:
                record.created_at = existing.created_at
                record.updated_at = _now()
            self._runs[record.run_id] = copy.deepcopy(record)

    async def get(self, run_id: str) -> RunRecord:
        async with self._lock:
            if run_id not in self._runs:
                raise RunNotFoundError(run_id)
            return copy.deepcopy(self._runs[run_id])

    async def list(self, status: str | None = None, limit: int = 50) -> list[RunRecord]:
        async with self._lock:
            runs = [r for r in self._runs.values() if status is None or r.status == status]
        runs.sort(key=lambda r: r.updated_at, reverse=True)
        return [copy.deepcopy(r) for r in runs[:limit]]

    async def delete(self, run_id: str) -> None:
        async with self._lock:
            self._runs.pop(run_id, None)
