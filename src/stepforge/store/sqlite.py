"""Run store backed by SQLite, so suspended runs survive a restart."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path

from stepforge.store.base import RunNotFoundError, RunRecord, RunStore, _now

_JSON_COLUMNS = ("definition", "input", "output", "error", "suspended", "state")


class SqliteRunStore(RunStore):

    def __init__(self, db_path: str = ".stepforge/runs.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                definition TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                suspended TEXT DEFAULT '[]',
                state TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)")
        self._conn.commit()

    async def _db_execute_commit(self, sql: str, params: tuple = ()) -> None:
        def _run():
            with self._db_lock:
                self._conn.execute(sql, params)
                self._conn.commit()
        await asyncio.to_thread(_run)

    async def _db_query(self, sql: str, params: tuple = ()) -> list:
        def _run():
            with self._db_lock:
                return self._conn.execute(sql, params).fetchall()
        return await asyncio.to_thread(_run)

    @staticmethod
    def _to_record(row: sqlite3.Row) -> RunRecord:
        data = dict(row)
        for column in _JSON_COLUMNS:
            if data.get(column) is not None:
                data[column] = json.loads(data[column])
        data["suspended"] = data.get("suspended") or []
        return RunRecord.from_dict(data)

    async def save(self, record: RunRecord) -> None:
        record.updated_at = _now()
        values = [json.dumps(getattr(record, c), default=str) for c in _JSON_COLUMNS]
        await self._db_execute_commit(
            "INSERT INTO runs "
            "(run_id, status, definition, input, output, error, suspended, state, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(run_id) DO UPDATE SET status = excluded.status, input = excluded.input, "
            "output = excluded.output, error = excluded.error, suspended = excluded.suspended, "
            "state = excluded.state, definition = excluded.definition, updated_at = excluded.updated_at",
            (record.run_id, record.status, *values, record.created_at, record.updated_at),
        )

    async def get(self, run_id: str) -> RunRecord:
        rows = await self._db_query("SELECT * FROM runs WHERE run_id = ?", (run_id,))
        if not rows:
            raise RunNotFoundError(run_id)
        return self._to_record(rows[0])

    async def list(self, status: str | None = None, limit: int = 50) -> list[RunRecord]:
        if status is None:
            rows = await self._db_query("SELECT * FROM runs ORDER BY updated_at DESC LIMIT ?", (limit,))
        else:
            rows = await self._db_query(
                "SELECT * FROM runs WHERE status = ? ORDER BY updated_at DESC LIMIT ?", (status, limit)
            )
        return [self._to_record(row) for row in rows]

    async def delete(self, run_id: str) -> None:
        await self._db_execute_commit("DELETE FROM runs WHERE run_id = ?", (run_id,))

    def close(self):
        with self._db_lock:
            self._conn.close()
