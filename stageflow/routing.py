"""Confidence gating, failure classification and dead-letter routing."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Literal, Optional, Union

from pydantic import BaseModel, ValidationError

from .config import ConfidenceConfig, RetryConfig
from .constants import (
    AUTH,
    AUTO_APPROVE,
    DEAD_LETTER_OPEN,
    DEAD_LETTER_RETRIED,
    ERROR_CATEGORIES,
    FAILED,
    MANUAL_REVIEW,
    NETWORK,
    PENDING,
    PROCESSING,
    REJECT,
    RETRYABLE_CATEGORIES,
    THROTTLE,
    UNKNOWN,
    VALIDATION,
)
from .contracts import StageJob
from .errors import DeadLetterNotFoundError, StageFailed
from .persistence import WorkflowRepository, apply_update
from .persistence.models import (
    DeadLetterEntry,
    ErrorDetail,
    FailureRecord,
    StageHistoryEntry,
    WorkflowRecord,
    utcnow,
)
from .transports import BaseTransport
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

GateDecision = Literal["auto_approve", "manual_review", "reject"]


class ConfidenceGate:
    """Route a workflow on its extraction confidence score."""

    def __init__(self, config: Optional[ConfidenceConfig] = None) -> None:
        self.config = config or ConfidenceConfig()

    def gate_extraction(self, confidence_score: float) -> GateDecision:
        if confidence_score >= self.config.auto_approve:
            return AUTO_APPROVE
        if confidence_score >= self.config.manual_review:
            return MANUAL_REVIEW
        return REJECT


class FailureClassification(BaseModel):
    retryable: bool
    category: str


_RULES = [
    (
        NETWORK,
        True,
        re.compile(
            r"time[d]?[ -]?out|econnreset|econnrefused|connection (reset|refused|aborted)|network",
            re.I,
        ),
    ),
    (THROTTLE, True, re.compile(r"rate.?limit|too many requests|\b429\b|throttl", re.I)),
    (
        AUTH,
        False,
        re.compile(
            r"unauthori[sz]ed|forbidden|permission|access denied|authenticat|\b401\b|\b403\b",
            re.I,
        ),
    ),
    (
        VALIDATION,
        False,
        re.compile(r"validation|invalid|schema|malformed|\b400\b|\b422\b", re.I),
    ),
]


def classify_failure(error: Union[BaseException, str]) -> FailureClassification:
    """Rule-based classification of a stage failure.

    Unrecognised errors are treated as retryable ``unknown`` failures.
    """
    if isinstance(error, StageFailed) and error.category in ERROR_CATEGORIES:
        retryable = (
            error.retryable
            if error.retryable is not None
            else error.category in RETRYABLE_CATEGORIES
        )
        return FailureClassification(retryable=retryable, category=error.category)

    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return FailureClassification(retryable=True, category=NETWORK)
    if isinstance(error, PermissionError):
        return FailureClassification(retryable=False, category=AUTH)
    if isinstance(error, ValidationError):
        return FailureClassification(retryable=False, category=VALIDATION)

    message = str(error)
    for category, retryable, pattern in _RULES:
        if pattern.search(message):
            if isinstance(error, StageFailed) and error.retryable is not None:
                retryable = error.retryable
            return FailureClassification(retryable=retryable, category=category)

    retryable = True
    if isinstance(error, StageFailed) and error.retryable is not None:
        retryable = error.retryable
    return FailureClassification(retryable=retryable, category=UNKNOWN)


class FailureDecision(BaseModel):
    """What the router decided for one failed stage attempt."""

    action: Literal["retry", "dead_letter", "ignored"]
    category: str
    retryable: bool
    attempt: int
    delay: float = 0.0
    next_attempt: Optional[int] = None
    entry: Optional[DeadLetterEntry] = None


class DeadLetterRouter:
    """Retry with backoff, or park the workflow in the dead-letter store.

    ``retry.max_attempts`` counts retries after the first failed attempt, so
    a stage that keeps failing runs ``max_attempts + 1`` times.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        config: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self.config = config or RetryConfig()
        self._clock = clock

    def backoff(self, attempt: int, category: str) -> float:
        return compute_backoff(
            attempt,
            base=self.config.base_delay_seconds,
            cap=self.config.max_delay_seconds,
            jitter=self.config.jitter,
            multiplier=self.config.throttle_multiplier if category == THROTTLE else 1.0,
        )

    async def handle_stage_failure(
        self,
        workflow_id: str,
        stage: str,
        error: Union[BaseException, str],
        attempt_number: int,
    ) -> FailureDecision:
        classification = classify_failure(error)
        message = str(error) or type(error).__name__
        now = self._clock()

        if classification.retryable and attempt_number <= self.config.max_attempts:
            delay = self.backoff(attempt_number, classification.category)

            def record_retry(record: WorkflowRecord) -> Optional[dict]:
                if record.is_terminal:
                    return None
                metadata = record.metadata.model_copy(deep=True)
                failure = metadata.failures.get(stage) or FailureRecord(first_failed_at=now)
                failure.attempts = attempt_number
                failure.last_category = classification.category
                metadata.failures[stage] = failure
                metadata.next_retry_at = now + timedelta(seconds=delay)
                metadata.history.append(
                    StageHistoryEntry(
                        stage=stage,
                        status="retrying",
                        timestamp=now,
                        attempt=attempt_number,
                        detail=classification.category,
                    )
                )
                return {"metadata": metadata}

            updated = await apply_update(
                self._repository, workflow_id, record_retry, now=self._clock
            )
            if updated is None:
                logger.info(f"Workflow {workflow_id} already finished; not retrying {stage}")
                return FailureDecision(
                    action="ignored",
                    category=classification.category,
                    retryable=True,
                    attempt=attempt_number,
                )
            logger.warning(
                f"Stage {stage} of workflow {workflow_id} failed "
                f"({classification.category}, attempt {attempt_number}); retrying in {delay:.1f}s"
            )
            return FailureDecision(
                action="retry",
                category=classification.category,
                retryable=True,
                attempt=attempt_number,
                delay=delay,
                next_attempt=attempt_number + 1,
            )

        entry = await self.park(
            workflow_id,
            stage=stage,
            category=classification.category,
            message=message,
            attempt_count=attempt_number,
            can_retry=classification.retryable,
        )
        return FailureDecision(
            action="dead_letter" if entry else "ignored",
            category=classification.category,
            retryable=classification.retryable,
            attempt=attempt_number,
            entry=entry,
        )

    async def fail_workflow(
        self,
        workflow_id: str,
        *,
        stage: Optional[str],
        category: str,
        message: str,
        attempt: int = 1,
        history_status: str = "failed",
        operator: bool = False,
    ) -> Optional[WorkflowRecord]:
        """Move a non-terminal workflow to ``failed`` with ``category``.

        Returns None if the workflow was already terminal.
        """
        now = self._clock()

        def mutate(record: WorkflowRecord) -> Optional[dict]:
            if record.is_terminal:
                return None
            metadata = record.metadata.model_copy(deep=True)
            metadata.error = ErrorDetail(
                category=category, message=message, stage=stage, occurred_at=now
            )
            metadata.next_retry_at = None
            metadata.history.append(
                StageHistoryEntry(
                    stage=stage or record.current_stage or "",
                    status=history_status,
                    timestamp=now,
                    attempt=attempt,
                    detail=category,
                )
            )
            return {"status": FAILED, "metadata": metadata, "completed_at": now}

        updated = await apply_update(
            self._repository, workflow_id, mutate, now=self._clock, operator=operator
        )
        if updated is not None:
            logger.error(f"Workflow {workflow_id} failed at {stage} ({category})")
        return updated

    async def park(
        self,
        workflow_id: str,
        *,
        stage: str,
        category: str,
        message: str,
        attempt_count: int,
        can_retry: bool,
    ) -> Optional[DeadLetterEntry]:
        """Fail the workflow and create its dead-letter entry.

        Only the call that actually performs the failed transition writes an
        entry, so concurrent failures never produce duplicates.
        """
        failed = await self.fail_workflow(
            workflow_id,
            stage=stage,
            category=category,
            message=message,
            attempt=attempt_count,
        )
        if failed is None:
            logger.info(f"Workflow {workflow_id} already terminal; no dead letter for {stage}")
            return None
        failure = failed.metadata.failures.get(stage)
        entry = DeadLetterEntry(
            workflow_id=workflow_id,
            tenant_id=failed.tenant_id,
            subject_id=failed.subject_id,
            stage_name=stage,
            error_category=category,
            attempt_count=attempt_count,
            first_failed_at=failure.first_failed_at if failure else self._clock(),
            can_retry=can_retry,
            last_error=message,
            created_at=self._clock(),
        )
        await self._repository.add_dead_letter(entry)
        logger.error(
            f"Dead-lettered workflow {workflow_id} at stage {stage} "
            f"({category}, {attempt_count} attempts) as {entry.id}"
        )
        return entry

    async def list_dead_letters(
        self, tenant_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[DeadLetterEntry]:
        return await self._repository.list_dead_letters(tenant_id=tenant_id, status=status)

    async def retry(self, entry_id: str, force: bool = False) -> StageJob:
        """Manually re-run the dead-lettered stage from its first attempt.

        The workflow goes ``failed -> pending -> processing``; its history and
        the entry itself are kept for audit.
        """
        entry = await self._repository.get_dead_letter(entry_id)
        if entry is None:
            raise DeadLetterNotFoundError(entry_id)
        if entry.status != DEAD_LETTER_OPEN:
            raise ValueError(f"Dead letter entry {entry_id} was already retried")
        if not entry.can_retry and not force:
            raise ValueError(
                f"Dead letter entry {entry_id} ({entry.error_category}) needs operator action; "
                "use force to retry anyway"
            )
        now = self._clock()
        stage = entry.stage_name

        def reset(record: WorkflowRecord) -> Optional[dict]:
            if record.status != FAILED:
                raise ValueError(
                    f"Workflow {record.id} is {record.status}; only failed workflows can be retried"
                )
            metadata = record.metadata.model_copy(deep=True)
            metadata.error = None
            metadata.failures.pop(stage, None)
            metadata.next_retry_at = None
            metadata.history.append(
                StageHistoryEntry(
                    stage=stage, status="reset", timestamp=now, detail=f"dead letter {entry_id}"
                )
            )
            return {
                "status": PENDING,
                "current_stage": stage,
                "completed_at": None,
                "metadata": metadata,
            }

        await apply_update(
            self._repository, entry.workflow_id, reset, now=self._clock, operator=True
        )

        def start(record: WorkflowRecord) -> Optional[dict]:
            if record.status != PENDING:
                return None
            return {"status": PROCESSING, "current_stage": stage}

        record = await apply_update(self._repository, entry.workflow_id, start, now=self._clock)
        job = StageJob(
            workflow_id=entry.workflow_id,
            stage=stage,
            tenant_id=entry.tenant_id,
            subject_id=entry.subject_id,
        )
        if record is not None:
            await self._transport.publish(stage, job)
        else:
            logger.info(
                f"Workflow {entry.workflow_id} was picked up before retry enqueue; "
                "leaving it to the scheduler"
            )

        entry.status = DEAD_LETTER_RETRIED
        entry.retried_at = now
        entry.retry_count += 1
        await self._repository.update_dead_letter(entry)
        logger.info(f"Retried dead letter {entry_id}: workflow {entry.workflow_id} stage {stage}")
        return job
