"""Small async-iterator combinators used to build observable progress views.

Streams are plain async iterators. Consumers stop a stream by leaving their
``async for`` loop (or calling ``aclose()``), which cancels any background
task the combinator started.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")

_DONE = object()


@dataclass(slots=True)
class _Failure:
    error: BaseException


class MutableState(Generic[T]):
    """Holds a value and lets subscribers observe its distinct changes.

    Observers always receive the current value first. Intermediate values set
    while an observer is busy are conflated into the latest one.
    """

    def __init__(self, value: T):
        self._value = value
        self._waiters: set[asyncio.Event] = set()

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        for waiter in self._waiters:
            waiter.set()

    async def observe(self) -> AsyncIterator[T]:
        changed = asyncio.Event()
        self._waiters.add(changed)
        try:
            last = self._value
            yield last
            while True:
                await changed.wait()
                changed.clear()
                if self._value != last:
                    last = self._value
                    yield last
        finally:
            self._waiters.discard(changed)


async def flat_map_latest(
    source: AsyncIterator[T],
    transform: Callable[[T], AsyncIterator[R]],
) -> AsyncIterator[R]:
    """Mirror the stream built from the most recent ``source`` value.

    Each new upstream value cancels the previous inner stream; anything the
    cancelled stream produced but the consumer has not read yet is dropped.
    """

    queue: asyncio.Queue[tuple[int | None, object]] = asyncio.Queue()
    generation = 0
    inner: asyncio.Task[None] | None = None

    async def _drain(gen: int, stream: AsyncIterator[R]) -> None:
        try:
            async for item in stream:
                queue.put_nowait((gen, item))
        except Exception as exc:
            queue.put_nowait((gen, _Failure(exc)))

    async def _pump() -> None:
        nonlocal generation, inner
        try:
            async for value in source:
                if inner is not None:
                    inner.cancel()
                    await asyncio.wait({inner})
                generation += 1
                inner = asyncio.create_task(_drain(generation, transform(value)))
            if inner is not None:
                await asyncio.wait({inner})
        except Exception as exc:
            queue.put_nowait((None, _Failure(exc)))
        else:
            queue.put_nowait((None, _DONE))

    pump = asyncio.create_task(_pump())
    try:
        while True:
            gen, item = await queue.get()
            if item is _DONE:
                return
            if gen is not None and gen != generation:
                continue
            if isinstance(item, _Failure):
                raise item.error
            yield item  # type: ignore[misc]
    finally:
        pump.cancel()
        if inner is not None:
            inner.cancel()
        pending = {task for task in (pump, inner) if task is not None}
        with suppress(asyncio.CancelledError):
            await asyncio.wait(pending)
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            with suppress(RuntimeError):
                await aclose()


async def map_latest(
    source: AsyncIterator[T],
    transform: Callable[[T], Awaitable[R]],
) -> AsyncIterator[R]:
    """Run ``transform`` for each value, abandoning it when a newer one arrives."""

    async def _single(value: T) -> AsyncIterator[R]:
        yield await transform(value)

    async for item in flat_map_latest(source, _single):
        yield item


async def map_values(
    source: AsyncIterator[T], transform: Callable[[T], R]
) -> AsyncIterator[R]:
    async for value in source:
        yield transform(value)


async def distinct_until_changed(source: AsyncIterator[T]) -> AsyncIterator[T]:
    sentinel = object()
    last: object = sentinel
    async for value in source:
        if last is not sentinel and value == last:
            continue
        last = value
        yield value


async def first(source: AsyncIterator[T]) -> T:
    """Return the first value of ``source`` and close it."""

    try:
        async for value in source:
            return value
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
    raise LookupError("stream completed without emitting a value")
