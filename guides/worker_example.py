"""Example: run the distributed executor against Redis.

Start one or more workers and the scheduler in separate shells:

    STAGEFLOW_TRANSPORT=redis STAGEFLOW_DATABASE_URL=postgresql://... \
        python guides/worker_example.py worker
    STAGEFLOW_TRANSPORT=redis STAGEFLOW_DATABASE_URL=postgresql://... \
        python guides/worker_example.py tick

The in-memory repository is per process, so a shared database is needed
once workers and the scheduler run separately.
"""

import asyncio
import logging
import sys

from stageflow import OrchestratorContext, scheduled_tick
from stageflow.config import load_config

from pipeline_example import registry


async def run_worker(context):
    pool = context.consumer_pool(["extract", "persist", "finalize"])
    await context.transport.connect()
    try:
        await pool.start()
    finally:
        await context.transport.disconnect()


async def run_ticks(context):
    await context.transport.connect()
    try:
        while True:
            tick, sweep = await scheduled_tick(context)
            print(f"scheduled={len(tick.scheduled)} reclaimed={len(tick.reclaimed)} "
                  f"auto_completed={len(sweep.completed)}")
            await asyncio.sleep(context.config.scheduler.interval_seconds)
    finally:
        await context.transport.disconnect()


async def main(role):
    config = load_config()
    config.pipeline = ["extract", "persist", "finalize"]
    context = OrchestratorContext.create(registry, config=config)
    if role == "worker":
        await run_worker(context)
    else:
        await run_ticks(context)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "worker"))
