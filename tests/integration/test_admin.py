"""Operator workflows: inspect, cancel, reset and retry."""

import pytest

from stageflow.admin import WorkflowAdmin
from stageflow.contracts import StageResult
from stageflow.errors import StageFailed, WorkflowNotFoundError
from stageflow.ingest import IngestionService
from stageflow.projection import project_status


@pytest.fixture
def admin(context):
    return WorkflowAdmin(context)


@pytest.mark.asyncio
async def test_view_of_completed_workflow(admin, context, make_workflow):
    wf = await make_workflow()
    await context.sequential.run(wf.id)

    view = await admin.get_workflow_view(wf.id)

    assert view.workflow.status == "completed"
    assert [h.stage for h in view.history] == ["extract", "persist", "finalize"]
    assert view.tenant_status.state == "completed"
    assert view.dead_letters == []
    with pytest.raises(WorkflowNotFoundError):
        await admin.get_workflow_view("missing")


@pytest.mark.asyncio
async def test_list_workflows_filters(admin, make_workflow):
    a = await make_workflow()
    b = await make_workflow(tenant_id="t-2", status="failed")

    assert [wf.id for wf in await admin.list_workflows()] == [a.id, b.id]
    assert [wf.id for wf in await admin.list_workflows(tenant_id="t-2")] == [b.id]
    assert [wf.id for wf in await admin.list_workflows(status="pending")] == [a.id]


@pytest.mark.asyncio
async def test_mark_failed_then_reset(admin, context, transport, make_workflow):
    wf = await make_workflow()
    await context.scheduler.tick()

    failed = await admin.mark_failed(wf.id, "duplicate upload")

    assert failed.status == "failed"
    assert failed.metadata.error.message == "Marked failed by operator: duplicate upload"
    assert failed.metadata.error.category == "cancelled"
    assert project_status(failed).state == "failed_action_required"
    assert await context.repository.list_dead_letters() == []
    with pytest.raises(ValueError):
        await admin.mark_failed(wf.id, "again")

    # The job already on the broker is dropped.
    outcome = await context.worker.process_job(transport.take("extract"))
    assert outcome.kind == "duplicate"

    reset = await admin.reset_workflow(wf.id)
    assert reset.status == "pending"
    assert reset.metadata.error is None
    assert reset.metadata.history[-1].status == "reset"
    with pytest.raises(ValueError):
        await admin.reset_workflow(wf.id)

    report = await context.scheduler.tick()
    assert report.scheduled == [wf.id]


@pytest.mark.asyncio
async def test_dead_letter_retry_recovers_the_workflow(admin, context, registry, transport):
    outages = []

    def persist(ctx):
        if not outages:
            outages.append(ctx.attempt)
            raise StageFailed("shop credentials expired", category="auth")
        return StageResult.ok({"order_id": "po-1"})

    registry._handlers["persist"] = persist
    service = IngestionService(context)
    wf = await service.create_workflow("po-1", "t-1", {"file": "po-1.pdf"}, run_inline=True)
    await service.drain()

    view = await admin.get_workflow_view(wf.id)
    assert view.workflow.status == "failed"
    assert view.tenant_status.state == "failed_action_required"
    (entry,) = view.dead_letters
    assert (entry.stage_name, entry.error_category, entry.can_retry) == ("persist", "auth", False)
    assert [e.id for e in await admin.list_dead_letters(status="open")] == [entry.id]

    with pytest.raises(ValueError):
        await admin.retry_dead_letter(entry.id)
    job = await admin.retry_dead_letter(entry.id, force=True)
    assert (job.stage, job.attempt) == ("persist", 1)

    for stage in ("persist", "finalize"):
        outcome = await context.worker.process_job(transport.take(stage))
        assert outcome.kind in ("advanced", "finished")

    view = await admin.get_workflow_view(wf.id)
    assert view.workflow.status == "completed"
    assert view.tenant_status.state == "completed"
    assert [e.status for e in view.dead_letters] == ["retried"]
    assert await admin.list_dead_letters(status="open") == []
