"""Stage job consumers for the distributed executor."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .config import WorkerConfig
from .constants import LOCK_COMPLETED, LOCK_FAILED, PROCESSING
from .contracts import StageJob
from .locking import AlreadyHeld, LockManager
from .persistence import WorkflowRepository
from .runner import StageOutcome, StageRunner
from .transports import BaseTransport

logger = logging.getLogger(__name__)

JobHandler = Callable[[StageJob], Awaitable[Any]]


class StageWorker:
    """Executes stage jobs delivered by the broker.

    A job runs under a short per-stage lease so it never overlaps with a
    sequential run or a redelivered copy of itself. The lease is released
    before the follow-up job is published.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        runner: StageRunner,
        locks: LockManager,
        lease_seconds: float = 120.0,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._runner = runner
        self._locks = locks
        self._lease_seconds = lease_seconds

    async def process_job(self, job: StageJob) -> Optional[StageOutcome]:
        record = await self._repository.get_workflow(job.workflow_id)
        if record is None:
            logger.warning(f"Dropping job {job.job_id}: workflow {job.workflow_id} not found")
            return None
        if record.status != PROCESSING or self._runner.is_duplicate(record, job.stage):
            logger.info(
                f"Ignoring job {job.job_id} for workflow {record.id} stage {job.stage}: "
                f"status={record.status} current_stage={record.current_stage}"
            )
            return StageOutcome(kind="duplicate", stage=job.stage, workflow=record)

        handle = await self._locks.acquire(record.id, self._lease_seconds)
        if isinstance(handle, AlreadyHeld):
            logger.info(
                f"Dropping job {job.job_id}: workflow {record.id} is held by {handle.holder}"
            )
            return StageOutcome(kind="duplicate", stage=job.stage, workflow=record)

        outcome: Optional[StageOutcome] = None
        try:
            current = await self._repository.get_workflow(record.id)
            outcome = await self._runner.execute_stage(current, job.stage, job.attempt)
        finally:
            succeeded = outcome is not None and outcome.kind in ("advanced", "finished", "duplicate")
            await self._locks.release(handle, LOCK_COMPLETED if succeeded else LOCK_FAILED)

        if outcome.kind == "advanced" and outcome.next_stage:
            await self._transport.publish(outcome.next_stage, job.for_stage(outcome.next_stage))
        elif outcome.kind == "retry":
            retry_job = job.bump_attempt()
            if outcome.next_attempt is not None:
                retry_job.attempt = outcome.next_attempt
            await self._transport.publish(job.stage, retry_job, delay=outcome.delay)
        return outcome

    def attach(
        self,
        pool: "ConsumerPool",
        stages: Iterable[str],
        config: Optional[WorkerConfig] = None,
    ) -> None:
        """Register one consumer per stage queue on ``pool``."""
        config = config or WorkerConfig()
        for stage in stages:
            pool.register_consumer(stage, config.concurrency_for(stage), self.process_job)


class ConsumerPool:
    """Runs registered queue consumers with bounded concurrency per queue."""

    def __init__(self, transport: BaseTransport) -> None:
        self._transport = transport
        self._consumers: Dict[str, tuple[int, JobHandler]] = {}
        self._stopping = asyncio.Event()

    def register_consumer(self, queue: str, concurrency: int, handler: JobHandler) -> None:
        if concurrency < 1:
            raise ValueError(f"Concurrency for {queue} must be at least 1")
        if queue in self._consumers:
            raise ValueError(f"Consumer already registered for queue: {queue}")
        self._consumers[queue] = (concurrency, handler)
        logger.info(f"Registered consumer for {queue} with concurrency {concurrency}")

    @property
    def queues(self) -> List[str]:
        return list(self._consumers)

    def stop(self) -> None:
        self._stopping.set()

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume every registered queue until ``lifespan`` elapses or :meth:`stop`."""
        if not self._consumers:
            raise ValueError("No consumers registered")
        self._stopping.clear()
        await asyncio.gather(
            *(
                self._consume(queue, concurrency, handler, lifespan)
                for queue, (concurrency, handler) in self._consumers.items()
            )
        )

    async def _consume(
        self, queue: str, concurrency: int, handler: JobHandler, lifespan: Optional[float]
    ) -> None:
        semaphore = asyncio.Semaphore(concurrency)
        running: Set[asyncio.Task] = set()

        async def run(raw_message: Any, job: StageJob) -> None:
            try:
                await handler(job)
            except Exception:
                logger.exception(
                    f"Handler for {queue} failed on job {job.job_id} "
                    f"(workflow {job.workflow_id}); requeueing"
                )
                await self._transport.nack(raw_message, requeue=True)
            else:
                await self._transport.ack(raw_message)
            finally:
                semaphore.release()

        async def pump() -> None:
            async for raw_message, job in self._transport.subscribe(queue, lifespan=lifespan):
                await semaphore.acquire()
                task = asyncio.create_task(run(raw_message, job))
                running.add(task)
                task.add_done_callback(running.discard)
                if self._stopping.is_set():
                    break

        # stop() must also end a consumer that is idle inside subscribe.
        pump_task = asyncio.create_task(pump())
        stop_task = asyncio.create_task(self._stopping.wait())
        try:
            await asyncio.wait({pump_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if not pump_task.done():
                logger.info(f"Stopping consumer for {queue}")
                pump_task.cancel()
                await asyncio.gather(pump_task, return_exceptions=True)
            else:
                pump_task.result()
        finally:
            for pending in (pump_task, stop_task):
                if not pending.done():
                    pending.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
