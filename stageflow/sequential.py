"""Run a whole workflow inside one invocation."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Literal, Optional

from pydantic import BaseModel

from .config import SequentialConfig
from .constants import (
    COMPLETED,
    COMPLETED_NEEDS_REVIEW,
    FAILED,
    LOCK_COMPLETED,
    LOCK_FAILED,
    PENDING,
    PROCESSING,
)
from .errors import LockLostError, WorkflowNotFoundError
from .locking import AlreadyHeld, LockHandle, LockManager
from .persistence import WorkflowRepository, apply_update
from .persistence.models import WorkflowRecord
from .runner import StageRunner

logger = logging.getLogger(__name__)

SequentialOutcome = Literal[
    "completed",
    "already_processing",
    "already_finished",
    "failed",
    "budget_exhausted",
    "lock_lost",
]


class SequentialResult(BaseModel):
    outcome: SequentialOutcome
    workflow: Optional[WorkflowRecord] = None


class SequentialExecutor:
    """Drives every remaining stage of one workflow under a single lease.

    Retryable failures back off in-process. When the execution budget runs
    out the workflow is left ``processing`` for the scheduler to pick up.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        runner: StageRunner,
        locks: LockManager,
        config: Optional[SequentialConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._runner = runner
        self._locks = locks
        self.config = config or SequentialConfig()
        self._sleep = sleep
        self._monotonic = monotonic

    async def run(self, workflow_id: str) -> SequentialResult:
        record = await self._repository.get_workflow(workflow_id)
        if record is None:
            raise WorkflowNotFoundError(workflow_id)
        if record.is_terminal:
            return SequentialResult(outcome="already_finished", workflow=record)

        handle = await self._locks.acquire(workflow_id, self.config.lease_seconds)
        if isinstance(handle, AlreadyHeld):
            logger.info(f"Workflow {workflow_id} already processing under {handle.holder}")
            return SequentialResult(outcome="already_processing", workflow=record)

        outcome: SequentialOutcome = "failed"
        try:
            outcome = await self._drive(workflow_id, handle)
        except LockLostError as e:
            logger.warning(f"Sequential run of workflow {workflow_id} lost its lease: {e}")
            outcome = "lock_lost"
        finally:
            await self._locks.release(
                handle, LOCK_COMPLETED if outcome == "completed" else LOCK_FAILED
            )

        final = await self._repository.get_workflow(workflow_id)
        logger.info(f"Sequential run of workflow {workflow_id} ended: {outcome}")
        return SequentialResult(outcome=outcome, workflow=final)

    async def _start(self, workflow_id: str) -> None:
        def mutate(record: WorkflowRecord) -> Optional[dict]:
            if record.status != PENDING and record.current_stage:
                return None
            patch: dict = {
                "current_stage": record.current_stage or record.pipeline[0],
                "stages_total": len(record.pipeline),
            }
            if record.status == PENDING:
                patch["status"] = PROCESSING
            return patch

        await apply_update(self._repository, workflow_id, mutate, now=self._locks.clock)

    async def _drive(self, workflow_id: str, handle: LockHandle) -> SequentialOutcome:
        started = self._monotonic()
        budget = self.config.max_execution_seconds
        await self._start(workflow_id)

        while True:
            remaining = budget - (self._monotonic() - started)
            if remaining <= 0:
                logger.warning(
                    f"Workflow {workflow_id} exhausted its {budget:.0f}s budget; "
                    "leaving it for the scheduler"
                )
                return "budget_exhausted"

            record = await self._repository.get_workflow(workflow_id)
            if record is None:
                raise WorkflowNotFoundError(workflow_id)
            if record.status in (COMPLETED, COMPLETED_NEEDS_REVIEW):
                return "completed"
            if record.status == FAILED:
                return "failed"

            stage = record.current_stage
            failure = record.metadata.failures.get(stage)
            attempt = failure.attempts + 1 if failure else 1
            result = await self._runner.execute_stage(record, stage, attempt)

            if result.kind == "finished":
                return "completed"
            if result.kind in ("failed", "rejected"):
                return "failed"
            if result.kind == "duplicate":
                current = await self._repository.get_workflow(workflow_id)
                if current is not None and current.status in (COMPLETED, COMPLETED_NEEDS_REVIEW):
                    return "completed"
                if current is not None and current.status == FAILED:
                    return "failed"
                logger.warning(f"Workflow {workflow_id} was advanced by another executor")
                return "lock_lost"
            if result.kind == "retry":
                if result.delay >= remaining:
                    logger.warning(
                        f"Retry of {stage} for workflow {workflow_id} would exceed the budget"
                    )
                    return "budget_exhausted"
                await self._sleep(result.delay)
            handle = await self._locks.renew(handle)
