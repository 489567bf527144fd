import asyncio
from datetime import timedelta

import pytest
from pydantic import BaseModel, ValidationError

from stageflow.config import ConfidenceConfig, RetryConfig
from stageflow.errors import DeadLetterNotFoundError, StageFailed
from stageflow.persistence import apply_update
from stageflow.routing import ConfidenceGate, DeadLetterRouter, classify_failure


@pytest.mark.parametrize(
    "score, decision",
    [
        (0.95, "auto_approve"),
        (0.90, "auto_approve"),
        (0.5, "manual_review"),
        (0.30, "manual_review"),
        (0.1, "reject"),
    ],
)
def test_confidence_gate_defaults(score, decision):
    assert ConfidenceGate().gate_extraction(score) == decision


def test_confidence_gate_thresholds_are_configurable():
    gate = ConfidenceGate(ConfidenceConfig(auto_approve=0.99, manual_review=0.6))
    assert gate.gate_extraction(0.95) == "manual_review"
    assert gate.gate_extraction(0.5) == "reject"


@pytest.mark.parametrize(
    "error, category, retryable",
    [
        ("Request timed out after 30s", "network", True),
        ("ECONNRESET while reading", "network", True),
        ("connection refused", "network", True),
        ("429 Too Many Requests", "throttle", True),
        ("Rate limit exceeded", "throttle", True),
        ("401 Unauthorized", "auth", False),
        ("Forbidden: missing scope", "auth", False),
        ("Schema mismatch on field total", "validation", False),
        ("invalid SKU", "validation", False),
        ("something odd happened", "unknown", True),
    ],
)
def test_classify_failure_rules(error, category, retryable):
    result = classify_failure(RuntimeError(error))
    assert (result.category, result.retryable) == (category, retryable)


class _Line(BaseModel):
    qty: int


def test_classify_failure_by_exception_type():
    assert classify_failure(asyncio.TimeoutError()).category == "network"
    assert classify_failure(ConnectionResetError()).category == "network"
    assert classify_failure(PermissionError("nope")).category == "auth"
    try:
        _Line(qty="many")
    except ValidationError as e:
        assert classify_failure(e).category == "validation"


def test_explicit_category_wins():
    result = classify_failure(StageFailed("timeout talking to shop", category="auth"))
    assert (result.category, result.retryable) == ("auth", False)
    result = classify_failure(StageFailed("odd", retryable=False))
    assert (result.category, result.retryable) == ("unknown", False)
    result = classify_failure(StageFailed("429 slow down", retryable=False))
    assert (result.category, result.retryable) == ("throttle", False)


@pytest.fixture
def router(repository, transport, clock):
    config = RetryConfig(max_attempts=3, base_delay_seconds=2, max_delay_seconds=300, jitter=0)
    return DeadLetterRouter(repository, transport, config, clock=clock)


async def _processing(make_workflow, stage="persist"):
    return await make_workflow(status="processing", current_stage=stage)


@pytest.mark.asyncio
async def test_retryable_failure_schedules_backoff(router, repository, make_workflow, clock):
    wf = await _processing(make_workflow)

    decision = await router.handle_stage_failure(wf.id, "persist", RuntimeError("timeout"), 1)

    assert decision.action == "retry"
    assert decision.delay == 2.0
    assert decision.next_attempt == 2
    stored = await repository.get_workflow(wf.id)
    assert stored.status == "processing"
    assert stored.metadata.failures["persist"].attempts == 1
    assert stored.metadata.next_retry_at == clock() + timedelta(seconds=2)
    assert stored.metadata.history[-1].status == "retrying"

    decision = await router.handle_stage_failure(wf.id, "persist", RuntimeError("429"), 2)
    assert decision.category == "throttle"
    assert decision.delay == 2.0 * 3 * 2


@pytest.mark.asyncio
async def test_exhausted_retries_dead_letter_once(router, repository, make_workflow):
    wf = await _processing(make_workflow)

    actions = []
    for attempt in range(1, 5):
        decision = await router.handle_stage_failure(
            wf.id, "persist", RuntimeError("connection reset"), attempt
        )
        actions.append(decision.action)

    assert actions == ["retry", "retry", "retry", "dead_letter"]
    stored = await repository.get_workflow(wf.id)
    assert stored.status == "failed"
    assert stored.metadata.error.category == "network"

    entries = await router.list_dead_letters()
    assert len(entries) == 1
    assert entries[0].attempt_count == 4
    assert entries[0].can_retry
    assert entries[0].first_failed_at == stored.metadata.failures["persist"].first_failed_at

    # A late duplicate failure never creates a second entry.
    late = await router.handle_stage_failure(wf.id, "persist", RuntimeError("connection reset"), 4)
    assert late.action == "ignored"
    assert len(await router.list_dead_letters()) == 1


@pytest.mark.asyncio
async def test_non_retryable_failure_dead_letters_immediately(router, repository, make_workflow):
    wf = await _processing(make_workflow)

    decision = await router.handle_stage_failure(wf.id, "persist", RuntimeError("403 Forbidden"), 1)

    assert decision.action == "dead_letter"
    assert decision.entry.error_category == "auth"
    assert not decision.entry.can_retry
    assert (await repository.get_workflow(wf.id)).status == "failed"


@pytest.mark.asyncio
async def test_concurrent_failures_create_one_entry(router, make_workflow):
    wf = await _processing(make_workflow)

    await asyncio.gather(
        *(router.handle_stage_failure(wf.id, "persist", RuntimeError("401"), 1) for _ in range(3))
    )
    assert len(await router.list_dead_letters()) == 1


@pytest.mark.asyncio
async def test_manual_retry_requeues_stage(router, repository, transport, make_workflow):
    wf = await _processing(make_workflow)
    decision = await router.handle_stage_failure(wf.id, "persist", RuntimeError("weird"), 4)
    history_before = len((await repository.get_workflow(wf.id)).metadata.history)

    job = await router.retry(decision.entry.id)

    assert (job.stage, job.attempt) == ("persist", 1)
    assert [j.workflow_id for j in transport.jobs("persist")] == [wf.id]
    stored = await repository.get_workflow(wf.id)
    assert stored.status == "processing"
    assert stored.current_stage == "persist"
    assert stored.metadata.error is None
    assert "persist" not in stored.metadata.failures
    assert len(stored.metadata.history) == history_before + 1

    entry = (await router.list_dead_letters())[0]
    assert entry.status == "retried"
    assert entry.retry_count == 1
    with pytest.raises(ValueError):
        await router.retry(entry.id)


@pytest.mark.asyncio
async def test_retry_of_action_required_entry_needs_force(router, make_workflow):
    wf = await _processing(make_workflow)
    decision = await router.handle_stage_failure(wf.id, "persist", RuntimeError("401"), 1)

    with pytest.raises(ValueError):
        await router.retry(decision.entry.id)
    job = await router.retry(decision.entry.id, force=True)
    assert job.workflow_id == wf.id
    with pytest.raises(DeadLetterNotFoundError):
        await router.retry("missing")


@pytest.mark.asyncio
async def test_failure_after_operator_cancel_is_ignored(router, repository, make_workflow):
    wf = await _processing(make_workflow)
    await apply_update(repository, wf.id, lambda r: {"status": "failed"})

    decision = await router.handle_stage_failure(wf.id, "persist", RuntimeError("timeout"), 1)
    assert decision.action == "ignored"
