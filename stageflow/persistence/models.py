"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..constants import (
    COMPLETED,
    COMPLETED_NEEDS_REVIEW,
    DEAD_LETTER_OPEN,
    FAILED,
    LOCK_RUNNING,
    METADATA_SCHEMA_VERSION,
    PENDING,
    PROCESSING,
    TERMINAL_STATUSES,
)
from ..errors import InvalidTransitionError

WorkflowStatus = Literal[
    "pending", "processing", "completed", "completed-needs-review", "failed"
]
LockStatus = Literal["running", "completed", "failed"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockInfo(BaseModel):
    """Lease held by one executor over one workflow."""

    lock_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    holder: str
    acquired_at: datetime
    lease_seconds: float
    status: LockStatus = "running"
    reclaimed_from: Optional[str] = None
    renewed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None

    def expires_at(self) -> datetime:
        return self.acquired_at + timedelta(seconds=self.lease_seconds)

    def is_active(self, now: datetime) -> bool:
        return self.status == LOCK_RUNNING and now < self.expires_at()

    def is_stale(self, now: datetime) -> bool:
        return self.status == LOCK_RUNNING and now >= self.expires_at()


class StageHistoryEntry(BaseModel):
    stage: str
    status: str  # completed, failed, rejected, retrying, reset, auto_fixed
    timestamp: datetime
    attempt: int = 1
    detail: Optional[str] = None


class ErrorDetail(BaseModel):
    category: str
    message: str
    stage: Optional[str] = None
    occurred_at: datetime


class FailureRecord(BaseModel):
    attempts: int = 0
    first_failed_at: datetime
    last_category: Optional[str] = None


class AutoFixInfo(BaseModel):
    applied: bool = True
    reason: str
    applied_at: datetime


class WorkflowMetadata(BaseModel):
    """Typed contents of the workflow metadata column."""

    schema_version: int = METADATA_SCHEMA_VERSION
    lock: Optional[LockInfo] = None
    history: list[StageHistoryEntry] = Field(default_factory=list)
    error: Optional[ErrorDetail] = None
    input: dict[str, Any] = Field(default_factory=dict)
    stage_outputs: dict[str, Any] = Field(default_factory=dict)
    failures: dict[str, FailureRecord] = Field(default_factory=dict)
    confidence: Optional[float] = None
    review_decision: Optional[str] = None
    needs_review: bool = False
    next_retry_at: Optional[datetime] = None
    reclaim_count: int = 0
    auto_fix: Optional[AutoFixInfo] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def completed_stages(self) -> list[str]:
        return [h.stage for h in self.history if h.status == "completed"]


# Legacy metadata blobs were untyped camelCase maps.
_LEGACY_LOCK_KEYS = {
    "lockId": "lock_id",
    "holderIdentity": "holder",
    "holder": "holder",
    "acquiredAt": "acquired_at",
    "leaseTimeout": "lease_seconds",
    "status": "status",
    "reclaimedFrom": "reclaimed_from",
    "releasedAt": "released_at",
}


def _migrate_v0(raw: dict[str, Any]) -> dict[str, Any]:
    data = dict(raw)
    migrated: dict[str, Any] = {"schema_version": METADATA_SCHEMA_VERSION}

    lock = data.pop("lockInfo", None)
    if isinstance(lock, dict):
        converted = {
            _LEGACY_LOCK_KEYS[k]: v for k, v in lock.items() if k in _LEGACY_LOCK_KEYS
        }
        converted.setdefault("holder", "unknown")
        # Older writers measured the lease in milliseconds.
        lease = converted.get("lease_seconds")
        if isinstance(lease, (int, float)) and lease > 10_000:
            converted["lease_seconds"] = lease / 1000
        converted.setdefault("lease_seconds", 300.0)
        if "acquired_at" in converted:
            migrated["lock"] = converted

    history = data.pop("stageHistory", None)
    if isinstance(history, list):
        migrated["history"] = [
            {
                "stage": h.get("stage"),
                "status": h.get("status", "completed"),
                "timestamp": h.get("timestamp"),
            }
            for h in history
            if isinstance(h, dict) and h.get("stage") and h.get("timestamp")
        ]

    if data.pop("autoFixApplied", False):
        migrated["auto_fix"] = {
            "applied": True,
            "reason": data.pop("autoFixReason", "legacy auto-fix"),
            "applied_at": data.pop("autoFixedAt", None) or utcnow(),
        }

    for key in ("lock", "history", "error", "input", "stage_outputs", "failures"):
        if key in data:
            migrated[key] = data.pop(key)
    migrated["extra"] = data
    return migrated


def migrate_metadata(raw: Any) -> Any:
    """Upgrade stored metadata to the current schema version."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        return raw
    version = raw.get("schema_version", 0)
    if version == 0:
        return _migrate_v0(raw)
    if version > METADATA_SCHEMA_VERSION:
        raise ValueError(f"Unsupported metadata schema version: {version}")
    return raw


class WorkflowRecord(BaseModel):
    """One processing attempt for one subject document."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subject_id: str
    tenant_id: str
    status: WorkflowStatus = "pending"
    current_stage: Optional[str] = None
    pipeline: list[str] = Field(default_factory=list)
    stages_completed: int = 0
    stages_total: int = 0
    progress_percent: int = 0
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _migrate(cls, value: Any) -> Any:
        return migrate_metadata(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DeadLetterEntry(BaseModel):
    """Durable record of a stage failure that will not be retried automatically."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workflow_id: str
    tenant_id: str
    subject_id: Optional[str] = None
    stage_name: str
    error_category: str
    attempt_count: int
    first_failed_at: datetime
    can_retry: bool
    status: Literal["open", "retried"] = DEAD_LETTER_OPEN
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    retried_at: Optional[datetime] = None
    retry_count: int = 0


class DueCriteria(BaseModel):
    """Filter for ``WorkflowRepository.list_due``."""

    statuses: list[str] = Field(default_factory=lambda: [PENDING])
    updated_before: Optional[datetime] = None
    subject_id: Optional[str] = None
    tenant_id: Optional[str] = None
    limit: Optional[int] = None


_ALLOWED_TRANSITIONS = {
    PENDING: {PROCESSING, FAILED},
    PROCESSING: {COMPLETED, COMPLETED_NEEDS_REVIEW, FAILED},
    FAILED: set(),
    COMPLETED: set(),
    COMPLETED_NEEDS_REVIEW: set(),
}


def check_transition(current: str, target: str, *, operator: bool = False) -> None:
    """Reject backward status moves.

    ``failed -> pending`` is only legal as an operator reset.
    """
    if current == target:
        return
    if operator and current == FAILED and target == PENDING:
        return
    if target not in _ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(current, target)
