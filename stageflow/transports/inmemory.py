"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import StageJob
from .base import BaseTransport

# (topic, serialized job, job)
RawJob = Tuple[str, str, StageJob]


class InMemoryTransport(BaseTransport[RawJob]):
    """Simple in-process queue for unit tests and single-process runs."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[Tuple[float, RawJob]]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()

    async def publish(self, topic: str, job: StageJob, delay: float = 0.0) -> None:
        """Publish job to in-memory queue."""
        raw = (topic, job.to_json(), job)
        async with self._lock:
            self._queues[topic].append((self._now() + max(0.0, delay), raw))

    async def _pop_ready(self, topic: str) -> Optional[RawJob]:
        async with self._lock:
            queue = self._queues[topic]
            now = self._now()
            for index, (ready_at, raw) in enumerate(queue):
                if ready_at <= now:
                    del queue[index]
                    return raw
        return None

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawJob, StageJob]]:
        """Subscribe to jobs from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        start_time = self._now() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if self._now() - start_time >= lifespan:
                    break

            raw = await self._pop_ready(topic)
            if raw is not None:
                yield raw, raw[2]
                continue

            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_message: RawJob) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawJob, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append((self._now(), raw_message))

    def jobs(self, topic: str) -> List[StageJob]:
        """Jobs currently queued on ``topic``, ready or delayed."""
        return [raw[2] for _, raw in self._queues[topic]]

    def take(self, topic: str) -> Optional[StageJob]:
        """Remove and return the oldest queued job regardless of its delay."""
        queue = self._queues[topic]
        return queue.popleft()[1][2] if queue else None
