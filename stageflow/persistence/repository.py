"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

from ..errors import ConcurrentUpdateError, WorkflowNotFoundError
from .models import DeadLetterEntry, DueCriteria, WorkflowRecord, check_transition, utcnow

logger = logging.getLogger(__name__)

# Returns the patch to apply, or None to leave the record untouched.
Mutation = Callable[[WorkflowRecord], Optional[dict[str, Any]]]


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    async def create_workflow(self, record: WorkflowRecord) -> WorkflowRecord:
        """Persist a new workflow record."""

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        """Retrieve the workflow record by id."""

    async def update_workflow(
        self, workflow_id: str, patch: dict[str, Any], expected_version: int
    ) -> WorkflowRecord:
        """Apply ``patch`` only if the stored version equals ``expected_version``.

        Raises:
            ConcurrentUpdateError: The record changed since it was read.
            WorkflowNotFoundError: No such workflow.
        """

    async def list_due(self, criteria: DueCriteria) -> list[WorkflowRecord]:
        """Return workflows matching ``criteria`` ordered by ``created_at``."""

    async def list_workflows(self) -> list[WorkflowRecord]:
        """Return all persisted workflows."""

    async def add_dead_letter(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        """Persist a dead letter entry."""

    async def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        """Retrieve a dead letter entry by id."""

    async def update_dead_letter(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        """Overwrite a stored dead letter entry."""

    async def list_dead_letters(
        self, tenant_id: str | None = None, status: str | None = None
    ) -> list[DeadLetterEntry]:
        """Return dead letter entries, oldest first."""


async def apply_update(
    repository: WorkflowRepository,
    workflow_id: str,
    mutate: Mutation,
    *,
    now: Callable[[], Any] = utcnow,
    attempts: int = 5,
    operator: bool = False,
) -> WorkflowRecord | None:
    """Read-modify-write ``workflow_id`` under compare-and-swap.

    ``mutate`` is re-run against a fresh read after each version conflict.
    Returns the updated record, or None when ``mutate`` declined to change it.
    """

    for attempt in range(1, attempts + 1):
        record = await repository.get_workflow(workflow_id)
        if record is None:
            raise WorkflowNotFoundError(workflow_id)
        patch = mutate(record)
        if patch is None:
            return None
        if "status" in patch:
            check_transition(record.status, patch["status"], operator=operator)
        patch.setdefault("updated_at", now())
        try:
            return await repository.update_workflow(workflow_id, patch, record.version)
        except ConcurrentUpdateError:
            logger.debug(
                f"Version conflict on workflow {workflow_id} (attempt {attempt}/{attempts})"
            )
    raise ConcurrentUpdateError(workflow_id, record.version)
