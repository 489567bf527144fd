"""Shared fixtures for stageflow tests."""

from datetime import datetime, timedelta, timezone

import pytest

from stageflow.config import RetryConfig, StageflowConfig
from stageflow.context import OrchestratorContext
from stageflow.contracts import StageResult
from stageflow.persistence.inmemory import InMemoryWorkflowRepository
from stageflow.persistence.models import WorkflowMetadata, WorkflowRecord
from stageflow.stages import StageRegistry
from stageflow.transports.inmemory import InMemoryTransport

PIPELINE = ["extract", "persist", "finalize"]


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class CallLog:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, int]] = []

    def count(self, stage: str) -> int:
        return sum(1 for _, s, _ in self.calls if s == stage)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def calls():
    return CallLog()


@pytest.fixture
def registry(calls):
    """Three-stage pipeline that echoes its input forward."""
    registry = StageRegistry()

    @registry.stage("extract")
    def extract(ctx):
        calls.calls.append((ctx.workflow_id, ctx.stage, ctx.attempt))
        return StageResult.ok({"lines": 3, "source": ctx.stage_input.get("file")}, confidence=0.95)

    @registry.stage("persist")
    async def persist(ctx):
        calls.calls.append((ctx.workflow_id, ctx.stage, ctx.attempt))
        return StageResult.ok({"order_id": f"po-{ctx.subject_id}", "lines": ctx.stage_input["lines"]})

    @registry.stage("finalize")
    async def finalize(ctx):
        calls.calls.append((ctx.workflow_id, ctx.stage, ctx.attempt))
        return StageResult.ok({"done": True}, terminal=True)

    return registry


@pytest.fixture
def config():
    return StageflowConfig(
        pipeline=list(PIPELINE),
        retry=RetryConfig(max_attempts=3, base_delay_seconds=0.0, jitter=0.0),
    )


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def transport():
    return InMemoryTransport(poll_interval=0.01)


@pytest.fixture
def context(config, repository, transport, registry, clock):
    return OrchestratorContext(
        config=config,
        repository=repository,
        transport=transport,
        registry=registry,
        clock=clock,
        holder="test-host:1",
    )


def make_record(clock, subject_id="sub-1", tenant_id="t-1", **kwargs) -> WorkflowRecord:
    now = clock()
    data = dict(
        subject_id=subject_id,
        tenant_id=tenant_id,
        pipeline=list(PIPELINE),
        stages_total=len(PIPELINE),
        metadata=WorkflowMetadata(input={"file": "po.pdf"}),
        created_at=now,
        updated_at=now,
    )
    data.update(kwargs)
    return WorkflowRecord(**data)


@pytest.fixture
def make_workflow(clock, repository):
    """Create and store a workflow record; keyword arguments override defaults."""

    async def factory(**kwargs) -> WorkflowRecord:
        return await repository.create_workflow(make_record(clock, **kwargs))

    return factory
