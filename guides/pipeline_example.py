"""Example: ingest a purchase order and run its pipeline inline.

Run with ``python guides/pipeline_example.py``. Uses the in-memory
repository and broker unless STAGEFLOW_DATABASE_URL / STAGEFLOW_TRANSPORT
are set.
"""

import asyncio
import logging

from stageflow import IngestionService, OrchestratorContext, StageRegistry, StageResult
from stageflow.config import StageflowConfig
from stageflow.projection import project_status

registry = StageRegistry()


@registry.stage("extract")
def extract(ctx):
    lines = [{"sku": "A-100", "qty": 4}, {"sku": "B-220", "qty": 1}]
    return StageResult.ok({"lines": lines, "file": ctx.stage_input["file"]}, confidence=0.93)


@registry.stage("persist")
async def persist(ctx):
    await asyncio.sleep(0.1)  # stands in for the order database write
    return StageResult.ok({"order_id": f"po-{ctx.subject_id}", "lines": len(ctx.stage_input["lines"])})


@registry.stage("finalize")
async def finalize(ctx):
    order = ctx.outputs["persist"]
    print(f"Order {order['order_id']} ready with {order['lines']} lines")
    return StageResult.ok({"done": True}, terminal=True)


async def main():
    config = StageflowConfig(pipeline=["extract", "persist", "finalize"])
    context = OrchestratorContext.create(registry, config=config)
    service = IngestionService(context)

    record = await service.create_workflow(
        "order-1042", "tenant-7", {"file": "uploads/order-1042.pdf"}, run_inline=True
    )
    await service.drain()

    record = await context.repository.get_workflow(record.id)
    status = project_status(record)
    print(f"Workflow {record.id}: {record.status}")
    print(f"Tenant sees: {status.state} ({status.progress_percent}%) - {status.message}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
