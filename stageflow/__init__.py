"""stageflow: durable stage orchestration for document pipelines."""

from .admin import WorkflowAdmin
from .context import OrchestratorContext
from .contracts import StageContext, StageJob, StageResult
from .dispatch import WorkflowScheduler
from .errors import StageFailed
from .execute import ConsumerPool, StageWorker
from .ingest import IngestionService, scheduled_tick
from .locking import LockManager
from .persistence import WorkflowRecord, get_repository
from .projection import project_status
from .recovery import RecoverySweeper
from .routing import ConfidenceGate, DeadLetterRouter, classify_failure
from .sequential import SequentialExecutor
from .stages import StageRegistry
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ConfidenceGate",
    "ConsumerPool",
    "DeadLetterRouter",
    "IngestionService",
    "LockManager",
    "OrchestratorContext",
    "RecoverySweeper",
    "SequentialExecutor",
    "StageContext",
    "StageFailed",
    "StageJob",
    "StageRegistry",
    "StageResult",
    "StageWorker",
    "WorkflowAdmin",
    "WorkflowRecord",
    "WorkflowScheduler",
    "classify_failure",
    "get_repository",
    "get_transport",
    "project_status",
    "scheduled_tick",
]
