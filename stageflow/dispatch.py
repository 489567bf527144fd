"""Periodic scheduler for the distributed executor."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .config import SchedulerConfig
from .constants import PENDING, PROCESSING
from .contracts import StageJob
from .persistence import WorkflowRepository, apply_update
from .persistence.models import DueCriteria, WorkflowRecord, utcnow
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class TickReport(BaseModel):
    """Workflow ids touched by one scheduler tick."""

    scheduled: List[str] = Field(default_factory=list)
    reclaimed: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)


class WorkflowScheduler:
    """Service responsible for dispatching pending and stuck workflows.

    Each tick moves due workflows to ``processing`` and publishes exactly one
    ``StageJob`` per workflow. It never waits for the stage to run.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self.config = config or SchedulerConfig()
        self._clock = clock

    async def _candidates(self, now: datetime) -> tuple[list[WorkflowRecord], list[WorkflowRecord]]:
        pending = await self._repository.list_due(
            DueCriteria(statuses=[PENDING], limit=self.config.batch_limit)
        )
        stuck = await self._repository.list_due(
            DueCriteria(
                statuses=[PROCESSING],
                updated_before=now - timedelta(seconds=self.config.stuck_threshold_seconds),
                limit=self.config.batch_limit,
            )
        )
        return pending, stuck

    def _waiting(self, record: WorkflowRecord, now: datetime) -> Optional[str]:
        lock = record.metadata.lock
        if lock is not None and lock.is_active(now):
            return f"locked by {lock.holder}"
        retry_at = record.metadata.next_retry_at
        if retry_at is not None and retry_at > now:
            return f"retry scheduled at {retry_at.isoformat()}"
        return None

    async def _fresh_in_flight(self, now: datetime) -> Dict[str, str]:
        """Subjects with a processing workflow that is not stuck."""
        in_flight = await self._repository.list_due(DueCriteria(statuses=[PROCESSING]))
        threshold = now - timedelta(seconds=self.config.stuck_threshold_seconds)
        return {
            record.subject_id: record.id
            for record in in_flight
            if record.updated_at >= threshold
        }

    async def tick(self) -> TickReport:
        now = self._clock()
        report = TickReport()
        pending, stuck = await self._candidates(now)

        stuck_ids = {record.id for record in stuck}
        by_subject: Dict[str, WorkflowRecord] = {}
        for record in sorted(pending + stuck, key=lambda r: r.created_at):
            kept = by_subject.get(record.subject_id)
            if kept is None:
                by_subject[record.subject_id] = record
                continue
            logger.info(
                f"Skipping workflow {record.id}: subject {record.subject_id} "
                f"already selected via {kept.id}"
            )
            report.skipped.append(record.id)

        fresh = await self._fresh_in_flight(now)
        for record in by_subject.values():
            busy = fresh.get(record.subject_id)
            if busy is not None and busy != record.id:
                logger.info(
                    f"Skipping workflow {record.id}: subject {record.subject_id} "
                    f"in flight as {busy}"
                )
                report.skipped.append(record.id)
                continue
            if record.id in stuck_ids:
                reason = self._waiting(record, now)
                if reason is not None:
                    logger.debug(f"Skipping stuck workflow {record.id}: {reason}")
                    report.skipped.append(record.id)
                    continue
            if await self._dispatch(record, reclaim=record.id in stuck_ids):
                (report.reclaimed if record.id in stuck_ids else report.scheduled).append(record.id)
            else:
                report.skipped.append(record.id)

        logger.info(
            f"Scheduler tick: {len(report.scheduled)} scheduled, "
            f"{len(report.reclaimed)} reclaimed, {len(report.skipped)} skipped"
        )
        return report

    async def _dispatch(self, record: WorkflowRecord, reclaim: bool) -> bool:
        expected_version = record.version
        stage = record.current_stage or (record.pipeline[0] if record.pipeline else None)
        if stage is None:
            logger.error(f"Workflow {record.id} has an empty pipeline; not scheduling")
            return False

        def mutate(current: WorkflowRecord) -> Optional[dict]:
            # Another scheduler or worker touched the row since it was listed.
            if current.version != expected_version:
                return None
            patch: dict = {"status": PROCESSING, "current_stage": stage}
            if reclaim:
                metadata = current.metadata.model_copy(deep=True)
                metadata.reclaim_count += 1
                metadata.next_retry_at = None
                patch["metadata"] = metadata
            else:
                patch["stages_total"] = len(current.pipeline)
            return patch

        updated = await apply_update(self._repository, record.id, mutate, now=self._clock)
        if updated is None:
            logger.info(f"Workflow {record.id} changed while scheduling; skipped")
            return False

        failure = updated.metadata.failures.get(stage)
        job = StageJob(
            workflow_id=updated.id,
            stage=stage,
            attempt=failure.attempts + 1 if failure else 1,
            tenant_id=updated.tenant_id,
            subject_id=updated.subject_id,
        )
        await self._transport.publish(stage, job)
        if reclaim:
            logger.warning(f"Re-enqueued stuck workflow {updated.id} at stage {stage}")
        else:
            logger.info(f"Scheduled workflow {updated.id} at stage {stage}")
        return True
