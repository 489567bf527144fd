"""Exception hierarchy for stageflow."""

from __future__ import annotations

from typing import Optional


class StageflowError(Exception):
    """Base class for orchestration errors."""


class WorkflowNotFoundError(StageflowError, LookupError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class DeadLetterNotFoundError(StageflowError, LookupError):
    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Dead letter entry not found: {entry_id}")
        self.entry_id = entry_id


class ConcurrentUpdateError(StageflowError):
    """Raised when a conditional update observes a newer record version."""

    def __init__(self, workflow_id: str, expected_version: int) -> None:
        super().__init__(
            f"Workflow {workflow_id} changed since version {expected_version}"
        )
        self.workflow_id = workflow_id
        self.expected_version = expected_version


class InvalidTransitionError(StageflowError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal status transition {current} -> {target}")
        self.current = current
        self.target = target


class LockLostError(StageflowError):
    """The lease backing an execution was reclaimed or released elsewhere."""


class StageFailed(StageflowError):
    """Raised by stage handlers to report a failure with routing hints.

    ``retryable`` and ``category`` override the rule-based classification
    when given.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: Optional[bool] = None,
        category: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.category = category


class TriggerRejectedError(StageflowError):
    """An inline sequential run was refused by the circuit breaker."""
