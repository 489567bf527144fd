"""Redis transport for cross-process stage jobs."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..contracts import StageJob
from .base import BaseTransport, queue_name

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-based transport.

    Ready jobs live in a list per stage; delayed jobs wait in a sorted set
    scored by their due time and are promoted by consumers.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        promote_batch: int = 50,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.promote_batch = promote_batch
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, job: StageJob, delay: float = 0.0) -> None:
        """Push job onto the stage list, or park it in the delayed set."""
        if not self._redis:
            await self.connect()

        name = queue_name(topic)
        if delay > 0:
            await self._redis.zadd(f"{name}:delayed", {job.to_json(): time.time() + delay})
        else:
            await self._redis.lpush(name, job.to_json())

    async def _promote_due(self, name: str) -> None:
        delayed = f"{name}:delayed"
        due = await self._redis.zrangebyscore(
            delayed, "-inf", time.time(), start=0, num=self.promote_batch
        )
        for member in due:
            # Only the consumer that removes the member moves it.
            if await self._redis.zrem(delayed, member):
                await self._redis.lpush(name, member)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, StageJob]]:
        """Subscribe to jobs from the stage queue."""
        if not self._redis:
            await self.connect()

        name = queue_name(topic)
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            await self._promote_due(name)
            result = await self._redis.brpop(name, timeout=1)

            if result:
                _, message_json = result
                try:
                    job = StageJob.from_json(message_json)
                except ValidationError as e:
                    logger.warning(f"Dropping malformed job on {name}: {e}")
                    continue
                yield message_json, job

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: str, requeue: bool = True) -> None:
        if requeue:
            job = StageJob.from_json(raw_message)
            await self.publish(job.stage, job)
