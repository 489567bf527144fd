"""Run one stage of a workflow and persist the result."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Literal, Optional

from pydantic import BaseModel

from .constants import (
    AUTO_APPROVE,
    COMPLETED,
    COMPLETED_NEEDS_REVIEW,
    LOW_CONFIDENCE,
    MANUAL_REVIEW,
    PROCESSING,
    REJECT,
    VALIDATION,
)
from .contracts import StageContext, StageResult
from .errors import StageFailed
from .persistence import WorkflowRepository, apply_update
from .persistence.models import StageHistoryEntry, WorkflowRecord, utcnow
from .routing import ConfidenceGate, DeadLetterRouter, FailureDecision
from .stages import StageRegistry, next_stage

logger = logging.getLogger(__name__)

OutcomeKind = Literal["advanced", "finished", "retry", "failed", "rejected", "duplicate"]


class StageOutcome(BaseModel):
    """Result of :meth:`StageRunner.execute_stage`."""

    kind: OutcomeKind
    stage: str
    workflow: Optional[WorkflowRecord] = None
    next_stage: Optional[str] = None
    delay: float = 0.0
    next_attempt: Optional[int] = None
    decision: Optional[FailureDecision] = None


def build_context(record: WorkflowRecord, stage: str, attempt: int) -> StageContext:
    """Stage input is the latest completed output, or the ingestion input."""
    outputs = dict(record.metadata.stage_outputs)
    stage_input: Dict[str, Any] = record.metadata.input
    for done in reversed(record.metadata.completed_stages()):
        if done in outputs:
            stage_input = outputs[done]
            break
    return StageContext(
        workflow_id=record.id,
        subject_id=record.subject_id,
        tenant_id=record.tenant_id,
        stage=stage,
        attempt=attempt,
        stage_input=stage_input,
        outputs=outputs,
    )


class StageRunner:
    """Shared stage-advance logic for the queue workers and the sequential executor.

    Callers own the lease; the runner invokes the handler, applies the
    confidence gate and writes the transition with a compare-and-swap that
    only succeeds while the workflow is still processing ``stage``.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: StageRegistry,
        router: DeadLetterRouter,
        gate: Optional[ConfidenceGate] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._router = router
        self._gate = gate or ConfidenceGate()
        self._clock = clock

    @staticmethod
    def is_duplicate(record: WorkflowRecord, stage: str) -> bool:
        return (
            record.is_terminal
            or record.current_stage != stage
            or stage in record.metadata.completed_stages()
        )

    async def execute_stage(
        self, record: WorkflowRecord, stage: str, attempt: int = 1
    ) -> StageOutcome:
        if self.is_duplicate(record, stage):
            logger.info(
                f"Skipping stage {stage} of workflow {record.id}: "
                f"status={record.status} current_stage={record.current_stage}"
            )
            return StageOutcome(kind="duplicate", stage=stage, workflow=record)

        context = build_context(record, stage, attempt)
        logger.info(f"Running stage {stage} of workflow {record.id} (attempt {attempt})")
        try:
            result = await self._registry.invoke(context)
        except Exception as e:
            logger.warning(f"Stage {stage} of workflow {record.id} raised: {e!r}")
            return await self._fail(record.id, stage, e, attempt)

        if not result.success:
            error = StageFailed(
                result.error or f"Stage {stage} reported failure",
                retryable=result.retryable,
                category=result.error_category,
            )
            return await self._fail(record.id, stage, error, attempt)

        try:
            following = None if result.terminal else next_stage(
                record.pipeline, stage, result.next_stage
            )
        except ValueError as e:
            error = StageFailed(str(e), retryable=False, category=VALIDATION)
            return await self._fail(record.id, stage, error, attempt)

        decision = None
        if result.confidence is not None:
            decision = self._gate.gate_extraction(result.confidence)
            if decision == REJECT:
                return await self._reject(record.id, stage, result.confidence, attempt)

        return await self._advance(record.id, stage, attempt, result, following, decision)

    async def _fail(
        self, workflow_id: str, stage: str, error: BaseException, attempt: int
    ) -> StageOutcome:
        decision = await self._router.handle_stage_failure(workflow_id, stage, error, attempt)
        if decision.action == "retry":
            return StageOutcome(
                kind="retry",
                stage=stage,
                delay=decision.delay,
                next_attempt=decision.next_attempt,
                decision=decision,
            )
        if decision.action == "ignored":
            return StageOutcome(kind="duplicate", stage=stage, decision=decision)
        return StageOutcome(kind="failed", stage=stage, decision=decision)

    async def _reject(
        self, workflow_id: str, stage: str, confidence: float, attempt: int
    ) -> StageOutcome:
        failed = await self._router.fail_workflow(
            workflow_id,
            stage=stage,
            category=LOW_CONFIDENCE,
            message=f"Extraction confidence {confidence:.2f} below review threshold",
            attempt=attempt,
            history_status="rejected",
        )
        if failed is None:
            return StageOutcome(kind="duplicate", stage=stage)
        logger.warning(f"Workflow {workflow_id} rejected at {stage}: confidence {confidence:.2f}")
        return StageOutcome(kind="rejected", stage=stage, workflow=failed)

    async def _advance(
        self,
        workflow_id: str,
        stage: str,
        attempt: int,
        result: StageResult,
        following: Optional[str],
        decision: Optional[str],
    ) -> StageOutcome:
        now = self._clock()

        def mutate(record: WorkflowRecord) -> Optional[dict]:
            if record.status != PROCESSING or self.is_duplicate(record, stage):
                return None
            metadata = record.metadata.model_copy(deep=True)
            metadata.stage_outputs[stage] = result.output_data
            metadata.failures.pop(stage, None)
            metadata.next_retry_at = None
            metadata.history.append(
                StageHistoryEntry(stage=stage, status="completed", timestamp=now, attempt=attempt)
            )
            if decision is not None:
                metadata.confidence = result.confidence
                metadata.review_decision = decision
                if decision == MANUAL_REVIEW:
                    metadata.needs_review = True

            total = len(record.pipeline)
            completed = record.stages_completed + 1
            patch: Dict[str, Any] = {
                "metadata": metadata,
                "stages_completed": completed,
                "stages_total": total,
            }
            if following is None:
                patch["status"] = (
                    COMPLETED_NEEDS_REVIEW if metadata.needs_review else COMPLETED
                )
                patch["progress_percent"] = 100
                patch["completed_at"] = now
            else:
                patch["current_stage"] = following
                patch["progress_percent"] = min(99, completed * 100 // max(total, 1))
            return patch

        updated = await apply_update(self._repository, workflow_id, mutate, now=self._clock)
        if updated is None:
            logger.warning(
                f"Stage {stage} of workflow {workflow_id} finished but the workflow moved on; "
                "discarding result"
            )
            return StageOutcome(kind="duplicate", stage=stage)

        if decision == AUTO_APPROVE:
            logger.debug(f"Workflow {workflow_id} auto-approved at confidence {result.confidence}")
        if following is None:
            logger.info(f"Workflow {workflow_id} finished with status {updated.status}")
            return StageOutcome(kind="finished", stage=stage, workflow=updated)
        logger.info(f"Workflow {workflow_id} advanced {stage} -> {following}")
        return StageOutcome(
            kind="advanced", stage=stage, workflow=updated, next_stage=following
        )
