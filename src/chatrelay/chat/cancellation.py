"""Per-turn abort signal shared by the engine, scheduler and file reads."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, TypeVar

from .errors import TurnCancelledError

T = TypeVar("T")


async def _next_item(iterator: AsyncIterator[T]) -> tuple[bool, T | None]:
    try:
        return True, await iterator.__anext__()
    except StopAsyncIteration:
        return False, None


class AbortSignal:
    """One-way flag that interrupts every awaitable raced against it."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise TurnCancelledError(self.reason or "Turn aborted")

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first."""

        if self.aborted:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_aborted()

        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        self.raise_if_aborted()
        raise AssertionError("unreachable")  # pragma: no cover

    async def iterate(self, source: AsyncIterable[T]) -> AsyncIterator[T]:
        """Yield from ``source`` until it ends or the signal fires."""

        iterator = source.__aiter__()
        try:
            while True:
                has_item, item = await self.race(_next_item(iterator))
                if not has_item:
                    return
                yield item  # type: ignore[misc]
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with suppress(RuntimeError):
                    await aclose()


__all__ = ["AbortSignal"]
