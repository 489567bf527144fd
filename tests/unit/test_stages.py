import pytest

from stageflow.contracts import StageContext, StageResult
from stageflow.stages import StageRegistry, next_stage
from stageflow.utils.retry import compute_backoff


def _ctx(stage):
    return StageContext(workflow_id="wf", subject_id="s", tenant_id="t", stage=stage)


@pytest.mark.asyncio
async def test_registry_invokes_sync_and_async_handlers():
    registry = StageRegistry()

    @registry.stage("extract")
    def extract(ctx):
        return StageResult.ok({"stage": ctx.stage})

    async def persist(ctx):
        return StageResult.ok({"stage": ctx.stage}, terminal=True)

    registry.register("persist", persist)

    assert (await registry.invoke(_ctx("extract"))).output_data == {"stage": "extract"}
    assert (await registry.invoke(_ctx("persist"))).terminal
    assert "extract" in registry
    assert registry.names() == ["extract", "persist"]


@pytest.mark.asyncio
async def test_registry_rejects_bad_handlers():
    registry = StageRegistry()
    registry.register("extract", lambda ctx: {"not": "a result"})

    with pytest.raises(ValueError):
        registry.register("extract", lambda ctx: StageResult.ok())
    with pytest.raises(TypeError):
        await registry.invoke(_ctx("extract"))
    with pytest.raises(KeyError):
        registry.get("persist")
    with pytest.raises(ValueError):
        registry.validate(["extract", "persist"])


def test_stage_result_validation():
    with pytest.raises(ValueError):
        StageResult(terminal=True, next_stage="persist")
    with pytest.raises(ValueError):
        StageResult(confidence=1.5)
    failed = StageResult.failed("boom", retryable=False, category="validation")
    assert not failed.success
    assert failed.error_category == "validation"


def test_next_stage_only_moves_forward():
    pipeline = ["extract", "persist", "draft", "finalize"]
    assert next_stage(pipeline, "extract") == "persist"
    assert next_stage(pipeline, "finalize") is None
    assert next_stage(pipeline, "extract", "draft") == "draft"
    with pytest.raises(ValueError):
        next_stage(pipeline, "draft", "extract")
    with pytest.raises(ValueError):
        next_stage(pipeline, "extract", "publish")


def test_compute_backoff():
    assert [compute_backoff(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]
    assert compute_backoff(20) == 300.0
    assert compute_backoff(2, multiplier=3.0) == 12.0
    jittered = compute_backoff(3, jitter=0.5)
    assert 8.0 <= jittered <= 12.0
