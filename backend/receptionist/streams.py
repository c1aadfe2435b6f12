"""Cancellable pull streams shared by the token and audio producers"""
from __future__ import annotations
import logging
from typing import AsyncGenerator, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellableStream(Generic[T]):
    """Async iterator over a producer generator that can be stopped mid-flight.

    Once cancel() is called no further item is handed out, including one the
    producer had already buffered when the flag flipped. At most one item is
    ever pending between the producer and the consumer.
    """

    def __init__(self, producer: AsyncGenerator[T, None], name: str = "stream"):
        self._producer = producer
        self.name = name
        self.cancelled = False
        self.items = 0

    def __aiter__(self) -> "CancellableStream[T]":
        return self

    async def __anext__(self) -> T:
        if self.cancelled:
            raise StopAsyncIteration
        item = await self._producer.__anext__()
        if self.cancelled:
            logger.debug(f"{self.name}: dropped item produced after cancellation")
            raise StopAsyncIteration
        self.items += 1
        return item

    def cancel(self) -> None:
        self.cancelled = True

    async def aclose(self) -> None:
        self.cancelled = True
        await self._producer.aclose()
