"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from typing import Any, Dict

from ..errors import ConcurrentUpdateError, WorkflowNotFoundError
from .models import DeadLetterEntry, DueCriteria, WorkflowRecord
from .repository import WorkflowRepository

_UPDATABLE = frozenset(WorkflowRecord.model_fields) - {"id", "version", "created_at"}


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowRecord] = {}
        self._dead_letters: Dict[str, DeadLetterEntry] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_workflow(self, record: WorkflowRecord) -> WorkflowRecord:
        async with self._lock:
            if record.id in self._workflows:
                raise ValueError(f"Workflow already exists: {record.id}")
            self._workflows[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def update_workflow(
        self, workflow_id: str, patch: dict[str, Any], expected_version: int
    ) -> WorkflowRecord:
        unknown = set(patch) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf is None:
                raise WorkflowNotFoundError(workflow_id)
            if wf.version != expected_version:
                raise ConcurrentUpdateError(workflow_id, expected_version)
            updated = wf.model_copy(
                update={**patch, "version": wf.version + 1}
            ).model_copy(deep=True)
            self._workflows[workflow_id] = updated
        return updated.model_copy(deep=True)

    async def list_due(self, criteria: DueCriteria) -> list[WorkflowRecord]:
        rows = [
            wf
            for wf in self._workflows.values()
            if wf.status in criteria.statuses
            and (criteria.updated_before is None or wf.updated_at < criteria.updated_before)
            and (criteria.subject_id is None or wf.subject_id == criteria.subject_id)
            and (criteria.tenant_id is None or wf.tenant_id == criteria.tenant_id)
        ]
        rows.sort(key=lambda wf: wf.created_at)
        if criteria.limit is not None:
            rows = rows[: criteria.limit]
        return [wf.model_copy(deep=True) for wf in rows]

    async def list_workflows(self) -> list[WorkflowRecord]:
        rows = sorted(self._workflows.values(), key=lambda wf: wf.created_at)
        return [wf.model_copy(deep=True) for wf in rows]

    # ------------------------------------------------------------------
    async def add_dead_letter(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        self._dead_letters[entry.id] = entry.model_copy(deep=True)
        return entry

    async def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        entry = self._dead_letters.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def update_dead_letter(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        self._dead_letters[entry.id] = entry.model_copy(deep=True)
        return entry

    async def list_dead_letters(
        self, tenant_id: str | None = None, status: str | None = None
    ) -> list[DeadLetterEntry]:
        rows = [
            e
            for e in self._dead_letters.values()
            if (tenant_id is None or e.tenant_id == tenant_id)
            and (status is None or e.status == status)
        ]
        rows.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in rows]
