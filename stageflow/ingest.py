"""Trigger entrypoints: workflow creation, inline runs and the periodic tick."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .constants import PENDING
from .context import OrchestratorContext
from .dispatch import TickReport
from .errors import TriggerRejectedError
from .persistence.models import WorkflowMetadata, WorkflowRecord
from .recovery import SweepReport
from .sequential import SequentialResult

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Consecutive-failure breaker guarding inline sequential runs.

    After ``failure_threshold`` failures in a row the breaker opens for
    ``reset_seconds``; then a single trial call is let through.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_seconds: float = 60.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self._monotonic = monotonic
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_running = False

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._monotonic() - self._opened_at >= self.reset_seconds:
            return "half-open"
        return "open"

    def allow(self) -> bool:
        state = self.state
        if state == "closed":
            return True
        if state == "half-open" and not self._trial_running:
            self._trial_running = True
            return True
        return False

    def record_success(self) -> None:
        self._failures = 0
        self._opened_at = None
        self._trial_running = False

    def record_failure(self) -> None:
        self._failures += 1
        self._trial_running = False
        if self._opened_at is not None or self._failures >= self.failure_threshold:
            self._opened_at = self._monotonic()


class IngestionService:
    """Creates workflows and optionally runs them inline.

    Inline runs are fire-and-forget tasks; :meth:`drain` waits for them.
    """

    def __init__(
        self, context: OrchestratorContext, breaker: Optional[CircuitBreaker] = None
    ) -> None:
        self.context = context
        settings = context.config.sequential
        self.breaker = breaker or CircuitBreaker(
            settings.breaker_failure_threshold, settings.breaker_reset_seconds
        )
        self._tasks: Set[asyncio.Task] = set()

    async def create_workflow(
        self,
        subject_id: str,
        tenant_id: str,
        stage_input: Optional[Dict[str, Any]] = None,
        pipeline: Optional[List[str]] = None,
        run_inline: bool = False,
    ) -> WorkflowRecord:
        pipeline = list(pipeline or self.context.config.pipeline)
        if not pipeline:
            raise ValueError("A workflow needs at least one stage")
        self.context.registry.validate(pipeline)
        now = self.context.clock()
        record = WorkflowRecord(
            subject_id=subject_id,
            tenant_id=tenant_id,
            status=PENDING,
            pipeline=pipeline,
            stages_total=len(pipeline),
            metadata=WorkflowMetadata(input=stage_input or {}),
            created_at=now,
            updated_at=now,
        )
        record = await self.context.repository.create_workflow(record)
        logger.info(
            f"Created workflow {record.id} for subject {subject_id} (tenant {tenant_id})"
        )
        if run_inline:
            try:
                self.submit_sequential(record.id)
            except TriggerRejectedError as e:
                logger.warning(f"{e}; workflow {record.id} left for the scheduler")
        return record

    def submit_sequential(self, workflow_id: str) -> "asyncio.Task[Optional[SequentialResult]]":
        if not self.breaker.allow():
            raise TriggerRejectedError(
                f"Inline execution refused for workflow {workflow_id}: circuit open"
            )
        task = asyncio.create_task(self._run_inline(workflow_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_inline(self, workflow_id: str) -> Optional[SequentialResult]:
        timeout = self.context.config.sequential.trigger_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.context.sequential.run(workflow_id), timeout=timeout
            )
        except asyncio.TimeoutError:
            self.breaker.record_failure()
            logger.error(f"Inline run of workflow {workflow_id} timed out after {timeout}s")
            return None
        except Exception:
            self.breaker.record_failure()
            logger.exception(f"Inline run of workflow {workflow_id} crashed")
            return None
        self.breaker.record_success()
        return result

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def scheduled_tick(context: OrchestratorContext) -> Tuple[TickReport, SweepReport]:
    """One periodic trigger: recover what can be completed, then dispatch."""
    sweep = await context.sweeper.sweep()
    tick = await context.scheduler.tick()
    return tick, sweep
