"""Explicit dependency container for the orchestration services."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property
from typing import Callable, Optional

from .config import StageflowConfig, load_config
from .dispatch import WorkflowScheduler
from .execute import ConsumerPool, StageWorker
from .locking import LockManager
from .persistence import WorkflowRepository, get_repository
from .persistence.models import utcnow
from .recovery import NullProbe, RecoverySweeper, SubjectProbe
from .routing import ConfidenceGate, DeadLetterRouter
from .runner import StageRunner
from .sequential import SequentialExecutor
from .stages import StageRegistry
from .transports import BaseTransport, get_transport


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class OrchestratorContext:
    """Everything the executors need, built once per process and passed down."""

    config: StageflowConfig
    repository: WorkflowRepository
    transport: BaseTransport
    registry: StageRegistry
    subject_probe: SubjectProbe = field(default_factory=NullProbe)
    clock: Callable[[], datetime] = utcnow
    holder: str = field(default_factory=default_holder)

    @classmethod
    def create(
        cls,
        registry: StageRegistry,
        config: Optional[StageflowConfig] = None,
        repository: Optional[WorkflowRepository] = None,
        transport: Optional[BaseTransport] = None,
        **kwargs,
    ) -> "OrchestratorContext":
        config = config or load_config()
        return cls(
            config=config,
            repository=repository or get_repository(config=config),
            transport=transport or get_transport(config=config),
            registry=registry,
            **kwargs,
        )

    @cached_property
    def locks(self) -> LockManager:
        return LockManager(
            self.repository,
            self.holder,
            clock=self.clock,
            attempts=self.config.lock.acquire_attempts,
        )

    @cached_property
    def gate(self) -> ConfidenceGate:
        return ConfidenceGate(self.config.confidence)

    @cached_property
    def router(self) -> DeadLetterRouter:
        return DeadLetterRouter(
            self.repository, self.transport, self.config.retry, clock=self.clock
        )

    @cached_property
    def runner(self) -> StageRunner:
        return StageRunner(
            self.repository, self.registry, self.router, self.gate, clock=self.clock
        )

    @cached_property
    def scheduler(self) -> WorkflowScheduler:
        return WorkflowScheduler(
            self.repository, self.transport, self.config.scheduler, clock=self.clock
        )

    @cached_property
    def worker(self) -> StageWorker:
        return StageWorker(
            self.repository,
            self.transport,
            self.runner,
            self.locks,
            lease_seconds=self.config.lock.stage_lease_seconds,
        )

    @cached_property
    def sequential(self) -> SequentialExecutor:
        return SequentialExecutor(
            self.repository, self.runner, self.locks, self.config.sequential
        )

    @cached_property
    def sweeper(self) -> RecoverySweeper:
        return RecoverySweeper(
            self.repository,
            self.router,
            self.subject_probe,
            self.config.recovery,
            clock=self.clock,
        )

    def consumer_pool(self, stages: Optional[list[str]] = None) -> ConsumerPool:
        """Consumer pool with one stage queue per pipeline stage."""
        stages = stages or self.config.pipeline
        self.registry.validate(stages)
        pool = ConsumerPool(self.transport)
        self.worker.attach(pool, stages, self.config.workers)
        return pool
