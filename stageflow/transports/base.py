"""Base transport interface for the stage job broker."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..constants import QUEUE_PREFIX
from ..contracts import StageJob

RawMessageT = TypeVar("RawMessageT")


def queue_name(topic: str) -> str:
    """Broker-level queue name for a stage topic."""
    return f"{QUEUE_PREFIX}:{topic}"


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for message brokers.

    Delivery is at-least-once: consumers must tolerate redelivered jobs.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, job: StageJob, delay: float = 0.0) -> None:
        """Send a job to a topic/queue.

        Args:
            topic: Stage name the job is addressed to.
            job: The job envelope.
            delay: Seconds before the job becomes visible to consumers.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, StageJob]]:
        """Yield raw transport message and StageJob pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)
