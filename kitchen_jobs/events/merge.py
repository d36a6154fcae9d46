"""Merge several async iterables into one cancellable stream."""

import asyncio
import logging
from typing import AsyncIterable, AsyncIterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _next(iterator: AsyncIterator[T]) -> T:
    return await iterator.__anext__()


async def merge_async_iterables(
    iterables: list[AsyncIterable[T]],
    cancel: Optional[asyncio.Event] = None,
) -> AsyncIterator[T]:
    """
    Yield values from all sources as they arrive.

    Every source has at most one pending ``__anext__``; when it resolves the
    value is yielded and only that source is re-armed. Order within a source
    is preserved, order across sources is not.

    Iteration ends when ``cancel`` is set or every source is exhausted. On any
    exit, pending reads are cancelled and every source is closed so its own
    cleanup (unsubscribe, connection release) runs.
    """
    iterators = [iterable.__aiter__() for iterable in iterables]
    pending: dict[asyncio.Task, int] = {}

    def arm(index: int) -> None:
        pending[asyncio.create_task(_next(iterators[index]))] = index

    for index in range(len(iterators)):
        arm(index)

    cancel_waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None

    try:
        while pending:
            if cancel is not None and cancel.is_set():
                break

            waiting = set(pending)
            if cancel_waiter is not None:
                waiting.add(cancel_waiter)

            done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
            if cancel_waiter is not None and cancel_waiter in done:
                break

            for task in sorted(done, key=lambda t: pending[t]):
                index = pending.pop(task)
                try:
                    value = task.result()
                except StopAsyncIteration:
                    continue
                yield value
                if cancel is not None and cancel.is_set():
                    break
                arm(index)
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for iterator in iterators:
            aclose = getattr(iterator, "aclose", None)
            if aclose is None:
                continue
            try:
                await aclose()
            except Exception as e:
                logger.debug(f"Error closing merged source: {e}")
