"""Time-boxed execution leases stored on the workflow record."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Union

from pydantic import BaseModel

from .constants import LOCK_COMPLETED, LOCK_FAILED, LOCK_RUNNING
from .errors import LockLostError
from .persistence import WorkflowRepository, apply_update
from .persistence.models import LockInfo, WorkflowRecord, utcnow

logger = logging.getLogger(__name__)


class LockHandle(BaseModel):
    """Proof of a successful acquisition, needed to renew or release."""

    workflow_id: str
    lock_id: str
    holder: str
    lease_seconds: float
    acquired_at: datetime
    reclaimed_from: Optional[str] = None


class AlreadyHeld(BaseModel):
    """Acquisition refused: another executor holds an active lease."""

    workflow_id: str
    lock_id: str
    holder: str
    expires_at: datetime


class LockManager:
    """Acquire, renew and release per-workflow leases.

    A lease is active while its status is ``running`` and less than
    ``lease_seconds`` have elapsed since ``acquired_at``. Expired running
    leases are stale and may be reclaimed by anyone; the new lease keeps the
    displaced ``lock_id`` in ``reclaimed_from``.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        holder: str,
        clock: Callable[[], datetime] = utcnow,
        attempts: int = 5,
    ) -> None:
        self._repository = repository
        self.holder = holder
        self._clock = clock
        self._attempts = attempts

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    def is_stale(self, lock_info: Optional[LockInfo], now: Optional[datetime] = None) -> bool:
        if lock_info is None:
            return False
        return lock_info.is_stale(now or self._clock())

    def is_active(self, lock_info: Optional[LockInfo], now: Optional[datetime] = None) -> bool:
        if lock_info is None:
            return False
        return lock_info.is_active(now or self._clock())

    async def acquire(
        self, workflow_id: str, lease_seconds: float
    ) -> Union[LockHandle, AlreadyHeld]:
        now = self._clock()
        acquired: Optional[LockInfo] = None
        blocking: Optional[LockInfo] = None

        def mutate(record: WorkflowRecord) -> Optional[dict]:
            nonlocal acquired, blocking
            current = record.metadata.lock
            if current is not None and current.is_active(now):
                blocking, acquired = current, None
                return None
            blocking = None
            acquired = LockInfo(
                holder=self.holder,
                acquired_at=now,
                lease_seconds=lease_seconds,
                reclaimed_from=current.lock_id
                if current is not None and current.is_stale(now)
                else None,
            )
            metadata = record.metadata.model_copy(deep=True)
            metadata.lock = acquired
            return {"metadata": metadata}

        await apply_update(
            self._repository,
            workflow_id,
            mutate,
            now=self._clock,
            attempts=self._attempts,
        )

        if acquired is None:
            assert blocking is not None
            logger.info(
                f"Workflow {workflow_id} is locked by {blocking.holder} until {blocking.expires_at()}"
            )
            return AlreadyHeld(
                workflow_id=workflow_id,
                lock_id=blocking.lock_id,
                holder=blocking.holder,
                expires_at=blocking.expires_at(),
            )

        if acquired.reclaimed_from:
            logger.warning(
                f"Reclaimed stale lock {acquired.reclaimed_from} on workflow {workflow_id} "
                f"as {acquired.lock_id}"
            )
        else:
            logger.debug(f"Acquired lock {acquired.lock_id} on workflow {workflow_id}")
        return LockHandle(
            workflow_id=workflow_id,
            lock_id=acquired.lock_id,
            holder=acquired.holder,
            lease_seconds=acquired.lease_seconds,
            acquired_at=acquired.acquired_at,
            reclaimed_from=acquired.reclaimed_from,
        )

    async def renew(self, handle: LockHandle) -> LockHandle:
        """Restart the lease clock.

        Raises:
            LockLostError: The lease was released or taken over.
        """
        now = self._clock()

        def mutate(record: WorkflowRecord) -> Optional[dict]:
            current = record.metadata.lock
            if (
                current is None
                or current.lock_id != handle.lock_id
                or current.status != LOCK_RUNNING
            ):
                raise LockLostError(
                    f"Lock {handle.lock_id} on workflow {handle.workflow_id} is no longer held"
                )
            metadata = record.metadata.model_copy(deep=True)
            metadata.lock.acquired_at = now
            metadata.lock.renewed_at = now
            return {"metadata": metadata}

        await apply_update(
            self._repository, handle.workflow_id, mutate, now=self._clock, attempts=self._attempts
        )
        return handle.model_copy(update={"acquired_at": now})

    async def release(self, handle: LockHandle, final_status: str) -> bool:
        """Mark the lease finished with ``final_status``.

        Returns False when the lease had already been reclaimed by another
        acquisition, in which case the record is left alone.
        """
        if final_status not in (LOCK_COMPLETED, LOCK_FAILED):
            raise ValueError(f"Invalid lock release status: {final_status}")
        now = self._clock()

        def mutate(record: WorkflowRecord) -> Optional[dict]:
            current = record.metadata.lock
            if current is None or current.lock_id != handle.lock_id:
                return None
            metadata = record.metadata.model_copy(deep=True)
            metadata.lock.status = final_status
            metadata.lock.released_at = now
            return {"metadata": metadata}

        updated = await apply_update(
            self._repository, handle.workflow_id, mutate, now=self._clock, attempts=self._attempts
        )
        if updated is None:
            logger.warning(
                f"Lock {handle.lock_id} on workflow {handle.workflow_id} was reclaimed "
                "before release"
            )
            return False
        logger.debug(
            f"Released lock {handle.lock_id} on workflow {handle.workflow_id} ({final_status})"
        )
        return True
