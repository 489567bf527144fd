"""Single-invocation pipeline runs."""

import asyncio

import pytest

from stageflow.contracts import StageResult
from stageflow.errors import WorkflowNotFoundError
from stageflow.locking import LockManager
from stageflow.sequential import SequentialExecutor


class FakeTimer:
    """Monotonic clock whose sleeps advance time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def executor(context, config=None, timer=None, holder=None):
    timer = timer or FakeTimer()
    locks = context.locks if holder is None else LockManager(
        context.repository, holder, clock=context.clock
    )
    return SequentialExecutor(
        context.repository,
        context.runner,
        locks,
        config or context.config.sequential,
        sleep=timer.sleep,
        monotonic=timer.monotonic,
    )


@pytest.mark.asyncio
async def test_runs_every_stage_to_completion(context, calls, make_workflow):
    wf = await make_workflow()

    result = await context.sequential.run(wf.id)

    assert result.outcome == "completed"
    stored = result.workflow
    assert stored.status == "completed"
    assert stored.stages_completed == 3
    assert stored.progress_percent == 100
    assert len(stored.metadata.history) == 3
    assert stored.metadata.lock.status == "completed"
    assert [stage for _, stage, _ in calls.calls] == ["extract", "persist", "finalize"]


@pytest.mark.asyncio
async def test_finished_or_missing_workflows(context, make_workflow):
    done = await make_workflow(status="completed")
    assert (await context.sequential.run(done.id)).outcome == "already_finished"
    with pytest.raises(WorkflowNotFoundError):
        await context.sequential.run("missing")


@pytest.mark.asyncio
async def test_resumes_from_current_stage(context, calls, make_workflow):
    wf = await make_workflow(status="processing", current_stage="extract")
    await context.runner.execute_stage(wf, "extract")
    calls.calls.clear()

    result = await context.sequential.run(wf.id)

    assert result.outcome == "completed"
    assert [stage for _, stage, _ in calls.calls] == ["persist", "finalize"]
    assert result.workflow.stages_completed == 3


@pytest.mark.asyncio
async def test_concurrent_runs_execute_each_stage_once(context, registry, calls, make_workflow):
    async def slow_extract(ctx):
        calls.calls.append((ctx.workflow_id, ctx.stage, ctx.attempt))
        await asyncio.sleep(0.05)
        return StageResult.ok({"lines": 3})

    registry._handlers["extract"] = slow_extract
    wf = await make_workflow()
    first = executor(context, holder="host-a:1")
    second = executor(context, holder="host-b:2")

    results = await asyncio.gather(first.run(wf.id), second.run(wf.id))

    assert sorted(r.outcome for r in results) == ["already_processing", "completed"]
    for stage in ("extract", "persist", "finalize"):
        assert calls.count(stage) == 1


@pytest.mark.asyncio
async def test_transient_failures_back_off_in_process(context, registry, make_workflow):
    attempts = []

    def flaky(ctx):
        attempts.append(ctx.attempt)
        if len(attempts) < 3:
            raise ConnectionResetError("connection reset by peer")
        return StageResult.ok({"order_id": "po-1"})

    registry._handlers["persist"] = flaky
    wf = await make_workflow()
    timer = FakeTimer()

    result = await executor(context, timer=timer).run(wf.id)

    assert result.outcome == "completed"
    assert attempts == [1, 2, 3]
    assert len(timer.sleeps) == 2


@pytest.mark.asyncio
async def test_retry_exhaustion_dead_letters(context, registry, calls, make_workflow):
    registry._handlers["persist"] = lambda ctx: StageResult.failed("ECONNRESET")
    wf = await make_workflow()

    result = await executor(context).run(wf.id)

    assert result.outcome == "failed"
    assert result.workflow.status == "failed"
    assert result.workflow.metadata.lock.status == "failed"
    (entry,) = await context.repository.list_dead_letters()
    assert entry.attempt_count == 4
    assert calls.count("finalize") == 0


@pytest.mark.asyncio
async def test_budget_exhaustion_leaves_work_for_the_scheduler(context, registry, make_workflow):
    timer = FakeTimer()

    def expensive(ctx):
        timer.now += 200
        return StageResult.ok({"lines": 3})

    registry._handlers["extract"] = expensive
    registry._handlers["persist"] = expensive
    wf = await make_workflow()
    config = context.config.sequential.model_copy(update={"max_execution_seconds": 300})

    result = await executor(context, config=config, timer=timer).run(wf.id)

    assert result.outcome == "budget_exhausted"
    stored = result.workflow
    assert stored.status == "processing"
    assert stored.current_stage == "finalize"
    assert stored.stages_completed == 2
    assert stored.metadata.lock.status == "failed"


@pytest.mark.asyncio
async def test_retry_delay_beyond_budget_stops_the_run(context, registry, make_workflow):
    context.config.retry.base_delay_seconds = 500
    registry._handlers["persist"] = lambda ctx: StageResult.failed("429 Too Many Requests")
    wf = await make_workflow()

    result = await executor(context).run(wf.id)

    assert result.outcome == "budget_exhausted"
    stored = result.workflow
    assert stored.status == "processing"
    assert stored.metadata.next_retry_at is not None


@pytest.mark.asyncio
async def test_low_confidence_run_fails_without_dead_letter(context, registry, calls, make_workflow):
    registry._handlers["extract"] = lambda ctx: StageResult.ok({"lines": 0}, confidence=0.05)
    wf = await make_workflow()

    result = await context.sequential.run(wf.id)

    assert result.outcome == "failed"
    assert result.workflow.metadata.error.category == "low-confidence"
    assert await context.repository.list_dead_letters() == []
    assert calls.count("persist") == 0
