"""Shared names and defaults for the stageflow orchestration core."""

from __future__ import annotations

# Pipeline stages, in execution order.
EXTRACTION = "extraction"
PERSISTENCE = "persistence"
DRAFT_CREATION = "draft_creation"
ASSET_ATTACHMENT = "asset_attachment"
CATALOG_SYNC = "catalog_sync"
FINALIZATION = "finalization"

DEFAULT_PIPELINE = [
    EXTRACTION,
    PERSISTENCE,
    DRAFT_CREATION,
    ASSET_ATTACHMENT,
    CATALOG_SYNC,
    FINALIZATION,
]

# Workflow statuses
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
COMPLETED_NEEDS_REVIEW = "completed-needs-review"
FAILED = "failed"

TERMINAL_STATUSES = frozenset({COMPLETED, COMPLETED_NEEDS_REVIEW, FAILED})

# Lock statuses
LOCK_RUNNING = "running"
LOCK_COMPLETED = "completed"
LOCK_FAILED = "failed"

# Error taxonomy
NETWORK = "network"
THROTTLE = "throttle"
AUTH = "auth"
VALIDATION = "validation"
LOW_CONFIDENCE = "low-confidence"
UNKNOWN = "unknown"
CANCELLED = "cancelled"

RETRYABLE_CATEGORIES = frozenset({NETWORK, THROTTLE, UNKNOWN})
ERROR_CATEGORIES = frozenset(
    {NETWORK, THROTTLE, AUTH, VALIDATION, LOW_CONFIDENCE, UNKNOWN, CANCELLED}
)

# Confidence gate decisions
AUTO_APPROVE = "auto_approve"
MANUAL_REVIEW = "manual_review"
REJECT = "reject"

# Dead letter entry statuses
DEAD_LETTER_OPEN = "open"
DEAD_LETTER_RETRIED = "retried"

METADATA_SCHEMA_VERSION = 1
QUEUE_PREFIX = "stageflow"
