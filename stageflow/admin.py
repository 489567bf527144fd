"""Operator interface over workflows and dead letters."""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel

from .constants import CANCELLED, DEAD_LETTER_OPEN, FAILED, PENDING
from .context import OrchestratorContext
from .contracts import StageJob
from .errors import WorkflowNotFoundError
from .persistence import apply_update
from .persistence.models import (
    DeadLetterEntry,
    StageHistoryEntry,
    WorkflowRecord,
)
from .projection import TenantStatus, project_status

logger = logging.getLogger(__name__)


class WorkflowView(BaseModel):
    workflow: WorkflowRecord
    history: List[StageHistoryEntry]
    tenant_status: TenantStatus
    dead_letters: List[DeadLetterEntry] = []


class WorkflowAdmin:
    def __init__(self, context: OrchestratorContext) -> None:
        self.context = context

    async def _require(self, workflow_id: str) -> WorkflowRecord:
        record = await self.context.repository.get_workflow(workflow_id)
        if record is None:
            raise WorkflowNotFoundError(workflow_id)
        return record

    async def get_workflow_view(self, workflow_id: str) -> WorkflowView:
        record = await self._require(workflow_id)
        entries = [
            e
            for e in await self.context.repository.list_dead_letters(tenant_id=record.tenant_id)
            if e.workflow_id == workflow_id
        ]
        open_entry = next((e for e in reversed(entries) if e.status == DEAD_LETTER_OPEN), None)
        return WorkflowView(
            workflow=record,
            history=record.metadata.history,
            tenant_status=project_status(record, open_entry),
            dead_letters=entries,
        )

    async def list_workflows(
        self, tenant_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[WorkflowRecord]:
        return [
            wf
            for wf in await self.context.repository.list_workflows()
            if (tenant_id is None or wf.tenant_id == tenant_id)
            and (status is None or wf.status == status)
        ]

    async def list_dead_letters(
        self, tenant_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[DeadLetterEntry]:
        return await self.context.router.list_dead_letters(tenant_id=tenant_id, status=status)

    async def retry_dead_letter(self, entry_id: str, force: bool = False) -> StageJob:
        return await self.context.router.retry(entry_id, force=force)

    async def reset_workflow(self, workflow_id: str) -> WorkflowRecord:
        """Return a failed workflow to ``pending`` for the scheduler."""
        now = self.context.clock()

        def mutate(record: WorkflowRecord) -> Optional[dict]:
            if record.status != FAILED:
                raise ValueError(f"Workflow {record.id} is {record.status}, not failed")
            metadata = record.metadata.model_copy(deep=True)
            metadata.error = None
            metadata.lock = None
            metadata.next_retry_at = None
            if record.current_stage:
                metadata.failures.pop(record.current_stage, None)
            metadata.history.append(
                StageHistoryEntry(
                    stage=record.current_stage or "",
                    status="reset",
                    timestamp=now,
                    detail="operator reset",
                )
            )
            return {"status": PENDING, "metadata": metadata, "completed_at": None}

        await self._require(workflow_id)
        updated = await apply_update(
            self.context.repository, workflow_id, mutate, now=self.context.clock, operator=True
        )
        logger.info(f"Operator reset workflow {workflow_id} to pending")
        return updated

    async def mark_failed(self, workflow_id: str, reason: str) -> WorkflowRecord:
        """Cancel a pending or processing workflow.

        Jobs already on the broker are dropped by workers when they see the
        terminal status.
        """
        record = await self._require(workflow_id)
        updated = await self.context.router.fail_workflow(
            workflow_id,
            stage=record.current_stage,
            category=CANCELLED,
            message=f"Marked failed by operator: {reason}",
            history_status="failed",
        )
        if updated is None:
            raise ValueError(f"Workflow {workflow_id} is already {record.status}")
        lock = updated.metadata.lock
        if lock is not None and lock.is_active(self.context.clock()):
            logger.warning(
                f"Workflow {workflow_id} marked failed while {lock.holder} holds its lock"
            )
        logger.info(f"Operator marked workflow {workflow_id} failed: {reason}")
        return updated
