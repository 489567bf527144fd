"""Stage handler registry."""

from __future__ import annotations

import inspect
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from .contracts import StageContext, StageResult

logger = logging.getLogger(__name__)

StageHandler = Callable[
    [StageContext], Union[StageResult, Awaitable[StageResult]]
]


class StageRegistry:
    """Maps stage names to handlers.

    Handlers may be plain functions or coroutines; either way they take a
    ``StageContext`` and return a ``StageResult``.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, StageHandler] = {}

    def register(self, name: str, handler: StageHandler) -> StageHandler:
        if name in self._handlers:
            raise ValueError(f"Stage already registered: {name}")
        self._handlers[name] = handler
        logger.debug(f"Registered stage handler {name}")
        return handler

    def stage(self, name: str) -> Callable[[StageHandler], StageHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: StageHandler) -> StageHandler:
            return self.register(name, handler)

        return decorator

    def get(self, name: str) -> StageHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise KeyError(f"No handler registered for stage: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def names(self) -> List[str]:
        return list(self._handlers)

    def validate(self, pipeline: Iterable[str]) -> None:
        """Ensure every stage of ``pipeline`` has a handler."""
        missing = [name for name in pipeline if name not in self._handlers]
        if missing:
            raise ValueError(f"Pipeline stages without handlers: {', '.join(missing)}")

    async def invoke(self, context: StageContext) -> StageResult:
        result = self.get(context.stage)(context)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, StageResult):
            raise TypeError(
                f"Stage {context.stage} returned {type(result).__name__}, expected StageResult"
            )
        return result


def next_stage(pipeline: List[str], stage: str, requested: Optional[str] = None) -> Optional[str]:
    """Resolve the stage after ``stage``.

    ``requested`` may skip forward but never backwards or outside the pipeline.
    """
    idx = pipeline.index(stage)
    if requested is None:
        return pipeline[idx + 1] if idx + 1 < len(pipeline) else None
    if requested not in pipeline[idx + 1 :]:
        raise ValueError(f"Stage {stage} cannot hand over to {requested}")
    return requested
