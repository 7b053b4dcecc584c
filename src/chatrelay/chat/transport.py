"""Frame round-loop events as server-sent events with keepalive and deadline."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import suppress
from typing import Any, AsyncIterator

from sse_starlette.sse import ServerSentEvent

from .cancellation import AbortSignal
from .errors import ChatRelayError, TurnTimeoutError
from .events import ContentEvent, NoQueryEvent, TurnEvent, event_value

logger = logging.getLogger(__name__)

DONE_FRAME: dict[str, str] = {"event": "message", "data": "[DONE]"}
KEEPALIVE_COMMENT = "keepalive"

_background_tasks: set[asyncio.Task[Any]] = set()


def completion_chunk(
    delta: dict[str, Any],
    *,
    completion_id: str,
    model: str,
    created: int,
    finish_reason: str | None = None,
) -> dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def event_delta(event: TurnEvent) -> dict[str, Any]:
    """Place one event inside a chunk delta keyed by its type."""

    if isinstance(event, ContentEvent):
        return {"content": event.value}
    value = event_value(event)
    if value is None:
        return {event.type: True}
    return {event.type: json.dumps(value)}


def error_payload(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, ChatRelayError):
        return exc.to_payload()
    return {"error": {"message": str(exc) or type(exc).__name__, "type": "internal_error"}}


def data_frame(payload: dict[str, Any]) -> dict[str, str]:
    return {"event": "message", "data": json.dumps(payload)}


class TurnStream:
    """Turn a stream of Turn events into SSE frames.

    A comment frame is written whenever no frame went out for
    ``keepalive_seconds``. When ``deadline_seconds`` elapses the Turn signal
    is aborted; before the first frame that surfaces as ``TurnTimeoutError``
    from :meth:`prime`, afterwards as a timeout error frame. Every stream ends
    with exactly one ``[DONE]`` frame unless the client goes away first.
    """

    def __init__(
        self,
        events: AsyncIterator[TurnEvent],
        *,
        signal: AbortSignal,
        model: str,
        keepalive_seconds: float = 15.0,
        deadline_seconds: float = 300.0,
        completion_id: str | None = None,
        created: int | None = None,
    ) -> None:
        self._events = events
        self._signal = signal
        self._model = model
        self._keepalive_seconds = keepalive_seconds
        self._deadline_seconds = deadline_seconds
        self.completion_id = completion_id or f"chatcmpl-{uuid.uuid4().hex}"
        self._created = created if created is not None else int(time.time())
        self._render = self._render_frames()
        self._pending: asyncio.Future[Any] | None = None
        self._primed: list[Any] = []
        self._deadline: float | None = None
        self._frames_sent = 0
        self._closed = False
        self._pump = self._pump_frames()

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> dict[str, Any]:
        return completion_chunk(
            delta,
            completion_id=self.completion_id,
            model=self._model,
            created=self._created,
            finish_reason=finish_reason,
        )

    async def _render_frames(self) -> AsyncIterator[dict[str, str]]:
        finished_normally = True
        try:
            async for event in self._events:
                if isinstance(event, NoQueryEvent):
                    finished_normally = False
                    yield data_frame(
                        {"error": {"message": event.message, "type": "invalid_request_error"}}
                    )
                    continue
                yield data_frame(self._chunk(event_delta(event)))
            if finished_normally:
                yield data_frame(self._chunk({}, finish_reason="stop"))
        except ChatRelayError as exc:
            logger.warning("Streaming turn failed: %s", exc.message)
            yield data_frame(error_payload(exc))
        except Exception as exc:
            logger.exception("Unexpected error while streaming turn")
            yield data_frame(error_payload(exc))
        finally:
            aclose = getattr(self._events, "aclose", None)
            if aclose is not None:
                with suppress(RuntimeError):
                    await aclose()
        yield DONE_FRAME

    async def prime(self) -> None:
        """Wait for the first frame so an early deadline can still become a 504."""

        while not self._primed:
            frame = await self._pump.__anext__()
            if isinstance(frame, ServerSentEvent):
                continue
            self._primed.append(frame)

    async def frames(self) -> AsyncIterator[Any]:
        try:
            while self._primed:
                yield self._primed.pop(0)
            async for frame in self._pump:
                yield frame
        finally:
            self.discard()

    def discard(self) -> None:
        """Abort the Turn and release its resources without waiting."""

        if self._closed:
            return
        self._closed = True
        self._signal.abort("Stream closed")
        task = asyncio.ensure_future(self._close())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    async def _pump_frames(self) -> AsyncIterator[Any]:
        loop = asyncio.get_running_loop()
        if self._deadline is None:
            self._deadline = loop.time() + self._deadline_seconds

        while True:
            if self._pending is None:
                self._pending = asyncio.ensure_future(self._render.__anext__())

            remaining = self._deadline - loop.time()
            if remaining <= 0:
                async for frame in self._expire():
                    yield frame
                return

            done, _ = await asyncio.wait(
                {self._pending}, timeout=min(self._keepalive_seconds, remaining)
            )
            if not done:
                if loop.time() < self._deadline:
                    yield ServerSentEvent(comment=KEEPALIVE_COMMENT)
                continue

            task, self._pending = self._pending, None
            try:
                frame = task.result()
            except StopAsyncIteration:
                self._closed = True
                return
            self._frames_sent += 1
            yield frame

    async def _expire(self) -> AsyncIterator[dict[str, str]]:
        logger.warning("Request deadline of %ss exceeded", self._deadline_seconds)
        self._signal.abort("Request deadline exceeded")
        await self._close()
        error = TurnTimeoutError(
            f"Request timed out after {self._deadline_seconds} seconds"
        )
        if self._frames_sent == 0:
            raise error
        yield data_frame(error.to_payload())
        yield DONE_FRAME

    async def _close(self) -> None:
        self._closed = True
        pending, self._pending = self._pending, None
        if pending is not None:
            pending.cancel()
            with suppress(asyncio.CancelledError, StopAsyncIteration):
                await pending
        with suppress(RuntimeError):
            await self._render.aclose()
        with suppress(RuntimeError):
            await self._pump.aclose()


__all__ = [
    "DONE_FRAME",
    "KEEPALIVE_COMMENT",
    "TurnStream",
    "completion_chunk",
    "data_frame",
    "error_payload",
    "event_delta",
]
