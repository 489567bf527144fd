"""Tenant-facing status derived from a workflow record."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel

from .constants import (
    AUTH,
    CANCELLED,
    COMPLETED,
    COMPLETED_NEEDS_REVIEW,
    FAILED,
    LOW_CONFIDENCE,
    NETWORK,
    RETRYABLE_CATEGORIES,
    THROTTLE,
    UNKNOWN,
    VALIDATION,
)
from .persistence.models import DeadLetterEntry, WorkflowRecord

TenantState = Literal[
    "processing",
    "needs_review",
    "completed",
    "failed_retry_available",
    "failed_action_required",
]

# Raw error text stays internal; tenants only ever see these.
FAILURE_MESSAGES = {
    NETWORK: "We couldn't reach a connected service. You can retry this document.",
    THROTTLE: "A connected service is busy right now. You can retry in a few minutes.",
    AUTH: "Your store connection needs to be re-authorised before this document can be processed.",
    VALIDATION: "Some information in this document couldn't be used. Please check it and upload again.",
    LOW_CONFIDENCE: "We couldn't read this document reliably. Please upload a clearer copy.",
    UNKNOWN: "Something went wrong while processing this document. You can retry it.",
    CANCELLED: "Processing of this document was stopped. Please contact support if you still need it.",
}


class TenantStatus(BaseModel):
    state: TenantState
    message: str
    progress_percent: int = 0
    current_stage: Optional[str] = None
    can_retry: bool = False


def project_status(
    record: WorkflowRecord, dead_letter: Optional[DeadLetterEntry] = None
) -> TenantStatus:
    if record.status == COMPLETED:
        return TenantStatus(
            state="completed",
            message="Your document has been processed.",
            progress_percent=100,
        )
    if record.status == COMPLETED_NEEDS_REVIEW:
        return TenantStatus(
            state="needs_review",
            message="Your document was processed. Please review the extracted details.",
            progress_percent=100,
        )
    if record.status == FAILED:
        error = record.metadata.error
        category = error.category if error else UNKNOWN
        if dead_letter is not None:
            category = dead_letter.error_category
        if category not in FAILURE_MESSAGES:
            category = UNKNOWN
        retryable = category in RETRYABLE_CATEGORIES
        return TenantStatus(
            state="failed_retry_available" if retryable else "failed_action_required",
            message=FAILURE_MESSAGES[category],
            progress_percent=record.progress_percent,
            current_stage=record.current_stage,
            can_retry=retryable,
        )
    return TenantStatus(
        state="processing",
        message="Your document is being processed.",
        progress_percent=record.progress_percent,
        current_stage=record.current_stage,
    )
