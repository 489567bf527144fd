"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import ConcurrentUpdateError, WorkflowNotFoundError
from .models import DeadLetterEntry, DueCriteria, WorkflowRecord
from .repository import WorkflowRepository

_COLUMNS = (
    "id",
    "subject_id",
    "tenant_id",
    "status",
    "current_stage",
    "pipeline",
    "stages_completed",
    "stages_total",
    "progress_percent",
    "metadata",
    "version",
    "created_at",
    "updated_at",
    "completed_at",
)
_JSON_COLUMNS = {"pipeline", "metadata"}
_TIME_COLUMNS = {"created_at", "updated_at", "completed_at"}
_UPDATABLE = set(_COLUMNS) - {"id", "version", "created_at"}


def _to_db(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column == "metadata":
        return value.model_dump_json() if hasattr(value, "model_dump_json") else json.dumps(value)
    if column in _JSON_COLUMNS:
        return json.dumps(value)
    if column in _TIME_COLUMNS:
        return value.isoformat(timespec="microseconds")
    return value


def _from_row(row: sqlite3.Row) -> WorkflowRecord:
    data = {}
    for column in _COLUMNS:
        value = row[column]
        if value is not None and column in _JSON_COLUMNS:
            value = json.loads(value)
        elif value is not None and column in _TIME_COLUMNS:
            value = datetime.fromisoformat(value)
        data[column] = value
    return WorkflowRecord(**data)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # One connection is shared by the worker threads of asyncio.to_thread.
        self._mutex = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_stage TEXT,
                pipeline TEXT NOT NULL,
                stages_completed INTEGER NOT NULL DEFAULT 0,
                stages_total INTEGER NOT NULL DEFAULT 0,
                progress_percent INTEGER NOT NULL DEFAULT 0,
                metadata TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflows_status ON workflows (status, updated_at)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS dead_letters (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                payload TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(self, record: WorkflowRecord) -> WorkflowRecord:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflows ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            *(_to_db(c, getattr(record, c)) for c in _COLUMNS),
        )
        return record

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {', '.join(_COLUMNS)} FROM workflows WHERE id = ?",
            workflow_id,
        )
        return _from_row(row) if row else None

    async def update_workflow(
        self, workflow_id: str, patch: dict[str, Any], expected_version: int
    ) -> WorkflowRecord:
        unknown = set(patch) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        assignments = ", ".join(f"{c} = ?" for c in patch)
        params = [_to_db(c, v) for c, v in patch.items()]
        changed = await asyncio.to_thread(
            self._execute,
            f"UPDATE workflows SET {assignments}, version = version + 1 "
            "WHERE id = ? AND version = ?",
            *params,
            workflow_id,
            expected_version,
        )
        if changed == 0:
            if await self.get_workflow(workflow_id) is None:
                raise WorkflowNotFoundError(workflow_id)
            raise ConcurrentUpdateError(workflow_id, expected_version)
        record = await self.get_workflow(workflow_id)
        assert record is not None
        return record

    async def list_due(self, criteria: DueCriteria) -> list[WorkflowRecord]:
        clauses = [f"status IN ({', '.join('?' for _ in criteria.statuses)})"]
        params: list[Any] = list(criteria.statuses)
        if criteria.updated_before is not None:
            clauses.append("updated_at < ?")
            params.append(_to_db("updated_at", criteria.updated_before))
        if criteria.subject_id is not None:
            clauses.append("subject_id = ?")
            params.append(criteria.subject_id)
        if criteria.tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(criteria.tenant_id)
        query = (
            f"SELECT {', '.join(_COLUMNS)} FROM workflows WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at"
        )
        if criteria.limit is not None:
            query += " LIMIT ?"
            params.append(criteria.limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [_from_row(r) for r in rows]

    async def list_workflows(self) -> list[WorkflowRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {', '.join(_COLUMNS)} FROM workflows ORDER BY created_at",
        )
        return [_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Dead letters
    async def add_dead_letter(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO dead_letters (id, workflow_id, tenant_id, status, created_at, payload) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            entry.id,
            entry.workflow_id,
            entry.tenant_id,
            entry.status,
            entry.created_at.isoformat(timespec="microseconds"),
            entry.model_dump_json(),
        )
        return entry

    async def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT payload FROM dead_letters WHERE id = ?", entry_id
        )
        return DeadLetterEntry.model_validate_json(row["payload"]) if row else None

    async def update_dead_letter(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        await asyncio.to_thread(
            self._execute,
            "UPDATE dead_letters SET status = ?, payload = ? WHERE id = ?",
            entry.status,
            entry.model_dump_json(),
            entry.id,
        )
        return entry

    async def list_dead_letters(
        self, tenant_id: str | None = None, status: str | None = None
    ) -> list[DeadLetterEntry]:
        clauses = ["1 = 1"]
        params: list[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT payload FROM dead_letters WHERE {' AND '.join(clauses)} ORDER BY created_at",
            *params,
        )
        return [DeadLetterEntry.model_validate_json(r["payload"]) for r in rows]
