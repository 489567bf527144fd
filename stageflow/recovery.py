"""Recovery sweeper for workflows stuck mid-pipeline."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from pydantic import BaseModel, Field

from .config import RecoveryConfig
from .constants import COMPLETED, COMPLETED_NEEDS_REVIEW, PROCESSING, UNKNOWN
from .persistence import WorkflowRepository, apply_update
from .persistence.models import AutoFixInfo, DueCriteria, StageHistoryEntry, WorkflowRecord, utcnow
from .routing import DeadLetterRouter

logger = logging.getLogger(__name__)


class SubjectProbe(Protocol):
    """Tells whether a subject already holds its complete terminal data."""

    async def has_terminal_data(self, subject_id: str, tenant_id: str) -> bool:
        ...


class NullProbe:
    """Probe for deployments without a subject store: nothing is complete."""

    async def has_terminal_data(self, subject_id: str, tenant_id: str) -> bool:
        return False


class SweepReport(BaseModel):
    completed: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)


class RecoverySweeper:
    """Force-complete stuck workflows whose subject is already done.

    Stuck workflows without terminal data are left to the scheduler until
    ``fail_after_seconds``, after which they are dead-lettered as ``unknown``.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        router: DeadLetterRouter,
        probe: Optional[SubjectProbe] = None,
        config: Optional[RecoveryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._router = router
        self._probe = probe or NullProbe()
        self.config = config or RecoveryConfig()
        self._clock = clock

    async def sweep(self) -> SweepReport:
        now = self._clock()
        report = SweepReport()
        stuck = await self._repository.list_due(
            DueCriteria(
                statuses=[PROCESSING],
                updated_before=now - timedelta(seconds=self.config.stuck_threshold_seconds),
                limit=self.config.batch_limit,
            )
        )
        seen: set[str] = set()
        for record in stuck:
            if record.id in seen:
                continue
            seen.add(record.id)
            if record.metadata.lock is not None and record.metadata.lock.is_active(now):
                logger.debug(f"Workflow {record.id} is locked; not sweeping")
                report.skipped.append(record.id)
                continue

            if await self._probe.has_terminal_data(record.subject_id, record.tenant_id):
                siblings = await self._repository.list_due(
                    DueCriteria(
                        statuses=[PROCESSING],
                        subject_id=record.subject_id,
                        tenant_id=record.tenant_id,
                    )
                )
                for sibling in [record] + [s for s in siblings if s.id != record.id]:
                    seen.add(sibling.id)
                    if await self._force_complete(sibling, now):
                        report.completed.append(sibling.id)
                    else:
                        report.skipped.append(sibling.id)
                continue

            age = (now - record.created_at).total_seconds()
            if age >= self.config.fail_after_seconds:
                if await self._give_up(record, age):
                    report.failed.append(record.id)
                else:
                    report.skipped.append(record.id)
                continue
            report.skipped.append(record.id)

        if report.completed or report.failed:
            logger.info(
                f"Recovery sweep: {len(report.completed)} auto-completed, "
                f"{len(report.failed)} failed, {len(report.skipped)} skipped"
            )
        return report

    async def _force_complete(self, record: WorkflowRecord, now: datetime) -> bool:
        expected_version = record.version

        def mutate(current: WorkflowRecord) -> Optional[dict]:
            # A conflict means another sweep or executor got there first.
            if current.version != expected_version or current.status != PROCESSING:
                return None
            if current.metadata.lock is not None and current.metadata.lock.is_active(now):
                return None
            metadata = current.metadata.model_copy(deep=True)
            metadata.auto_fix = AutoFixInfo(
                reason="subject already has terminal data", applied_at=now
            )
            metadata.next_retry_at = None
            metadata.history.append(
                StageHistoryEntry(
                    stage=current.current_stage or "",
                    status="auto_fixed",
                    timestamp=now,
                    detail="recovery sweep",
                )
            )
            return {
                "status": COMPLETED_NEEDS_REVIEW if metadata.needs_review else COMPLETED,
                "metadata": metadata,
                "progress_percent": 100,
                "completed_at": now,
            }

        updated = await apply_update(self._repository, record.id, mutate, now=self._clock)
        if updated is None:
            return False
        logger.warning(
            f"Auto-completed stuck workflow {record.id} (subject {record.subject_id}) "
            f"as {updated.status}"
        )
        return True

    async def _give_up(self, record: WorkflowRecord, age: float) -> bool:
        stage = record.current_stage or (record.pipeline[0] if record.pipeline else "")
        failure = record.metadata.failures.get(stage)
        entry = await self._router.park(
            record.id,
            stage=stage,
            category=UNKNOWN,
            message=f"Workflow stuck at {stage} for {age:.0f}s without progress",
            attempt_count=failure.attempts if failure else max(1, record.metadata.reclaim_count),
            can_retry=True,
        )
        return entry is not None
