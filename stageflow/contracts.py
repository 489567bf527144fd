"""Core message contracts for the stageflow pipeline."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator


class StageJob(BaseModel):
    """Envelope exchanged over the broker: run ``stage`` of ``workflow_id``."""

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    stage: str
    attempt: int = 1
    tenant_id: Optional[str] = None
    subject_id: Optional[str] = None
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize job to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "StageJob":
        """Deserialize job from JSON."""
        return cls.model_validate_json(data)

    def bump_attempt(self) -> "StageJob":
        """Return a fresh job for the next attempt of the same stage."""
        return self.model_copy(
            update={
                "job_id": str(uuid.uuid4()),
                "attempt": self.attempt + 1,
                "enqueued_at": datetime.now(timezone.utc),
            }
        )

    def for_stage(self, stage: str) -> "StageJob":
        """Return the first attempt of another stage of the same workflow."""
        return StageJob(
            workflow_id=self.workflow_id,
            stage=stage,
            tenant_id=self.tenant_id,
            subject_id=self.subject_id,
        )


class StageContext(BaseModel):
    """Input handed to a stage handler.

    ``stage_input`` is the previous stage's output (or the workflow input for
    the first stage); ``outputs`` holds every completed stage's output.
    """

    workflow_id: str
    subject_id: str
    tenant_id: str
    stage: str
    attempt: int = 1
    stage_input: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)


class StageResult(BaseModel):
    """Outcome reported by a stage handler."""

    success: bool = True
    output_data: Dict[str, Any] = Field(default_factory=dict)
    next_stage: Optional[str] = None
    terminal: bool = False
    retryable: Optional[bool] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    confidence: Optional[float] = None

    @model_validator(mode="after")
    def _check_routing(self) -> "StageResult":
        if self.terminal and self.next_stage:
            raise ValueError("a terminal result cannot name a next stage")
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be within [0, 1]")
        return self

    @classmethod
    def ok(cls, output: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "StageResult":
        return cls(success=True, output_data=output or {}, **kwargs)

    @classmethod
    def failed(
        cls,
        error: str,
        *,
        retryable: Optional[bool] = None,
        category: Optional[str] = None,
    ) -> "StageResult":
        return cls(
            success=False, error=error, retryable=retryable, error_category=category
        )
