"""Per-dependency fallback producers.

A fallback is a zero-argument callable whose value stands in for the real
result when a dependency is unavailable.  It may be a plain function or a
coroutine function.  The registry does not validate what it returns.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

FallbackProducer = Callable[[], Any]


class FallbackRegistry:
    """Mapping from dependency name to fallback producer.  Last registration wins."""

    def __init__(self) -> None:
        self._producers: dict[str, FallbackProducer] = {}

    def register(self, name: str, producer: FallbackProducer) -> None:
        if name in self._producers:
            logger.debug("Replacing fallback", extra={"dependency": name})
        self._producers[name] = producer

    def unregister(self, name: str) -> None:
        self._producers.pop(name, None)

    def get(self, name: str) -> FallbackProducer | None:
        return self._producers.get(name)

    def names(self) -> list[str]:
        return list(self._producers)

    def __contains__(self, name: object) -> bool:
        return name in self._producers

    async def resolve(self, name: str) -> Any:
        """Call the fallback registered for *name* and return its value.

        Raises
        ------
        KeyError
            If no fallback is registered for *name*.
        """
        producer = self._producers[name]
        return await call_producer(producer)


async def call_producer(producer: FallbackProducer) -> Any:
    """Invoke *producer*, awaiting the result if it is awaitable."""
    value = producer()
    if inspect.isawaitable(value):
        value = await value
    return value
