"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

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
_UPDATABLE = set(_COLUMNS) - {"id", "version", "created_at"}
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM workflows"


def _to_db(column: str, value: Any) -> Any:
    if column == "metadata":
        return value.model_dump_json()
    if column == "pipeline":
        return json.dumps(value)
    return value


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _from_row(row: asyncpg.Record) -> WorkflowRecord:
    data = dict(row)
    data["pipeline"] = _json(data["pipeline"])
    data["metadata"] = _json(data["metadata"])
    return WorkflowRecord(**data)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_stage TEXT,
                pipeline JSONB NOT NULL,
                stages_completed INTEGER NOT NULL DEFAULT 0,
                stages_total INTEGER NOT NULL DEFAULT 0,
                progress_percent INTEGER NOT NULL DEFAULT 0,
                metadata JSONB NOT NULL,
                version INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflows_status ON workflows (status, updated_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS dead_letters (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                payload JSONB NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def create_workflow(self, record: WorkflowRecord) -> WorkflowRecord:
        placeholders = ", ".join(f"${i}" for i in range(1, len(_COLUMNS) + 1))
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO workflows ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                *(_to_db(c, getattr(record, c)) for c in _COLUMNS),
            )
        finally:
            await conn.close()
        return record

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(f"{_SELECT} WHERE id = $1", workflow_id)
        finally:
            await conn.close()
        return _from_row(row) if row else None

    async def update_workflow(
        self, workflow_id: str, patch: dict[str, Any], expected_version: int
    ) -> WorkflowRecord:
        unknown = set(patch) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        columns = list(patch)
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
        n = len(columns)
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"UPDATE workflows SET {assignments}, version = version + 1 "
                f"WHERE id = ${n + 1} AND version = ${n + 2} "
                f"RETURNING {', '.join(_COLUMNS)}",
                *(_to_db(c, patch[c]) for c in columns),
                workflow_id,
                expected_version,
            )
            if row is None:
                exists = await conn.fetchval(
                    "SELECT 1 FROM workflows WHERE id = $1", workflow_id
                )
        finally:
            await conn.close()
        if row is None:
            if not exists:
                raise WorkflowNotFoundError(workflow_id)
            raise ConcurrentUpdateError(workflow_id, expected_version)
        return _from_row(row)

    async def list_due(self, criteria: DueCriteria) -> list[WorkflowRecord]:
        params: list[Any] = [list(criteria.statuses)]
        clauses = ["status = ANY($1::text[])"]
        if criteria.updated_before is not None:
            params.append(criteria.updated_before)
            clauses.append(f"updated_at < ${len(params)}")
        if criteria.subject_id is not None:
            params.append(criteria.subject_id)
            clauses.append(f"subject_id = ${len(params)}")
        if criteria.tenant_id is not None:
            params.append(criteria.tenant_id)
            clauses.append(f"tenant_id = ${len(params)}")
        query = f"{_SELECT} WHERE {' AND '.join(clauses)} ORDER BY created_at"
        if criteria.limit is not None:
            params.append(criteria.limit)
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [_from_row(r) for r in rows]

    async def list_workflows(self) -> list[WorkflowRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(f"{_SELECT} ORDER BY created_at")
        finally:
            await conn.close()
        return [_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    async def add_dead_letter(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO dead_letters (id, workflow_id, tenant_id, status, created_at, payload) "
                "VALUES ($1, $2, $3, $4, $5, $6)",
                entry.id,
                entry.workflow_id,
                entry.tenant_id,
                entry.status,
                entry.created_at,
                entry.model_dump_json(),
            )
        finally:
            await conn.close()
        return entry

    async def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        conn = await self._connect()
        try:
            payload = await conn.fetchval(
                "SELECT payload FROM dead_letters WHERE id = $1", entry_id
            )
        finally:
            await conn.close()
        return DeadLetterEntry.model_validate(_json(payload)) if payload else None

    async def update_dead_letter(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE dead_letters SET status = $1, payload = $2 WHERE id = $3",
                entry.status,
                entry.model_dump_json(),
                entry.id,
            )
        finally:
            await conn.close()
        return entry

    async def list_dead_letters(
        self, tenant_id: str | None = None, status: str | None = None
    ) -> list[DeadLetterEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT payload FROM dead_letters "
                "WHERE ($1::text IS NULL OR tenant_id = $1) "
                "AND ($2::text IS NULL OR status = $2) "
                "ORDER BY created_at",
                tenant_id,
                status,
            )
        finally:
            await conn.close()
        return [DeadLetterEntry.model_validate(_json(r["payload"])) for r in rows]
