import pytest

from stageflow.contracts import StageResult
from stageflow.errors import StageFailed
from stageflow.runner import build_context


async def _at(make_workflow, stage="extract", **kwargs):
    return await make_workflow(status="processing", current_stage=stage, **kwargs)


@pytest.mark.asyncio
async def test_stage_advances_and_persists_output(context, repository, make_workflow):
    wf = await _at(make_workflow)

    outcome = await context.runner.execute_stage(wf, "extract")

    assert outcome.kind == "advanced"
    assert outcome.next_stage == "persist"
    stored = await repository.get_workflow(wf.id)
    assert stored.current_stage == "persist"
    assert stored.stages_completed == 1
    assert stored.progress_percent == 33
    assert stored.metadata.stage_outputs["extract"] == {"lines": 3, "source": "po.pdf"}
    assert stored.metadata.confidence == 0.95
    assert stored.metadata.review_decision == "auto_approve"
    assert [h.stage for h in stored.metadata.history] == ["extract"]


@pytest.mark.asyncio
async def test_stage_input_is_previous_output(make_workflow, context):
    wf = await _at(make_workflow)
    await context.runner.execute_stage(wf, "extract")
    wf = await context.repository.get_workflow(wf.id)

    ctx = build_context(wf, "persist", attempt=1)
    assert ctx.stage_input == {"lines": 3, "source": "po.pdf"}
    assert set(ctx.outputs) == {"extract"}


@pytest.mark.asyncio
async def test_replayed_job_is_a_no_op(context, calls, make_workflow):
    wf = await _at(make_workflow)
    await context.runner.execute_stage(wf, "extract")

    stale_copy = wf
    replay = await context.runner.execute_stage(stale_copy, "extract")
    fresh = await context.repository.get_workflow(wf.id)
    again = await context.runner.execute_stage(fresh, "extract")

    # The stale copy still names extract, so the handler runs but its result is discarded.
    assert replay.kind == "duplicate"
    assert again.kind == "duplicate"
    assert calls.count("extract") == 2
    stored = await context.repository.get_workflow(wf.id)
    assert stored.stages_completed == 1
    assert len(stored.metadata.history) == 1


@pytest.mark.asyncio
async def test_terminal_stage_completes_workflow(context, make_workflow):
    wf = await _at(make_workflow, stage="finalize")

    outcome = await context.runner.execute_stage(wf, "finalize")

    assert outcome.kind == "finished"
    assert outcome.workflow.status == "completed"
    assert outcome.workflow.progress_percent == 100
    assert outcome.workflow.completed_at is not None


@pytest.mark.asyncio
async def test_manual_review_finishes_as_needs_review(context, registry, make_workflow):
    registry._handlers["extract"] = lambda ctx: StageResult.ok({"lines": 1}, confidence=0.5)
    wf = await _at(make_workflow)
    await context.runner.execute_stage(wf, "extract")
    wf = await context.repository.get_workflow(wf.id)
    assert wf.metadata.needs_review
    await context.runner.execute_stage(wf, "persist")
    wf = await context.repository.get_workflow(wf.id)

    outcome = await context.runner.execute_stage(wf, "finalize")

    assert outcome.workflow.status == "completed-needs-review"


@pytest.mark.asyncio
async def test_low_confidence_rejects_without_dead_letter(context, registry, calls, make_workflow):
    registry._handlers["extract"] = lambda ctx: StageResult.ok({"lines": 1}, confidence=0.1)
    wf = await _at(make_workflow)

    outcome = await context.runner.execute_stage(wf, "extract")

    assert outcome.kind == "rejected"
    stored = await context.repository.get_workflow(wf.id)
    assert stored.status == "failed"
    assert stored.metadata.error.category == "low-confidence"
    assert stored.metadata.history[-1].status == "rejected"
    assert await context.repository.list_dead_letters() == []
    assert calls.count("persist") == 0


@pytest.mark.asyncio
async def test_handler_exception_is_routed(context, registry, make_workflow):
    def broken(ctx):
        raise StageFailed("shop said 401", category="auth")

    registry._handlers["persist"] = broken
    wf = await _at(make_workflow, stage="persist")

    outcome = await context.runner.execute_stage(wf, "persist")

    assert outcome.kind == "failed"
    assert outcome.decision.entry.error_category == "auth"


@pytest.mark.asyncio
async def test_failed_result_is_retried(context, registry, make_workflow):
    registry._handlers["persist"] = lambda ctx: StageResult.failed("ECONNRESET")
    wf = await _at(make_workflow, stage="persist")

    outcome = await context.runner.execute_stage(wf, "persist", attempt=1)

    assert outcome.kind == "retry"
    assert outcome.next_attempt == 2


@pytest.mark.asyncio
async def test_failed_auth_result_dead_letters_at_once(context, registry, repository, make_workflow):
    registry._handlers["persist"] = lambda ctx: StageResult.failed("403 forbidden", category="auth")
    wf = await _at(make_workflow, stage="persist")

    outcome = await context.runner.execute_stage(wf, "persist", attempt=1)

    assert outcome.kind == "failed"
    assert (outcome.decision.category, outcome.decision.retryable) == ("auth", False)
    (entry,) = await repository.list_dead_letters()
    assert entry.attempt_count == 1
    assert not entry.can_retry


@pytest.mark.asyncio
async def test_failed_result_without_category_uses_message_rules(context, registry, make_workflow):
    registry._handlers["persist"] = lambda ctx: StageResult(
        success=False, error="schema validation failed"
    )
    wf = await _at(make_workflow, stage="persist")

    outcome = await context.runner.execute_stage(wf, "persist", attempt=1)

    assert outcome.kind == "failed"
    assert outcome.decision.category == "validation"
    assert not outcome.decision.entry.can_retry


@pytest.mark.asyncio
async def test_failed_result_can_force_retry(context, registry, make_workflow):
    registry._handlers["persist"] = lambda ctx: StageResult.failed(
        "schema validation failed", retryable=True
    )
    wf = await _at(make_workflow, stage="persist")

    outcome = await context.runner.execute_stage(wf, "persist", attempt=1)

    assert outcome.kind == "retry"


@pytest.mark.asyncio
async def test_backward_handover_is_a_validation_failure(context, registry, make_workflow):
    registry._handlers["persist"] = lambda ctx: StageResult.ok(next_stage="extract")
    wf = await _at(make_workflow, stage="persist")

    outcome = await context.runner.execute_stage(wf, "persist")

    assert outcome.kind == "failed"
    assert outcome.decision.category == "validation"


@pytest.mark.asyncio
async def test_forward_skip_is_allowed(context, registry, make_workflow):
    registry._handlers["extract"] = lambda ctx: StageResult.ok(next_stage="finalize")
    wf = await _at(make_workflow)

    outcome = await context.runner.execute_stage(wf, "extract")

    assert outcome.next_stage == "finalize"
