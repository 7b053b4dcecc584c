"""Multi-round tool-calling loop shared by the buffered and streaming paths."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Protocol, Sequence

from ..completions import BackendError
from .cancellation import AbortSignal
from .content import Part, PartListUnion, UsageMetadata
from .errors import (
    ChatRelayError,
    EngineError,
    TurnCancelledError,
    TurnTimeoutError,
)
from .events import (
    TERMINAL_TOOL_STATUSES,
    ChatCompressedEvent,
    CompletedToolCall,
    ContentEvent,
    ErrorEvent,
    NoQueryEvent,
    StreamEvent,
    ThoughtEvent,
    ThoughtSummary,
    ToolCallRequest,
    ToolCallRequestEvent,
    ToolExecutionStatus,
    TurnEvent,
    UserCancelledEvent,
)
from .query import prepare_query

logger = logging.getLogger(__name__)

PROMPT_ID_SEPARATOR = "########"


class TurnState(str, Enum):
    PREPARING = "preparing"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class Engine(Protocol):
    @property
    def history_length(self) -> int: ...

    last_usage: UsageMetadata | None

    def send_message_stream(
        self, query: PartListUnion, signal: AbortSignal, prompt_id: str
    ) -> AsyncIterator[StreamEvent]: ...


class Scheduler(Protocol):
    def schedule(
        self, requests: Sequence[ToolCallRequest], signal: AbortSignal
    ) -> asyncio.Future[list[CompletedToolCall]]: ...


@dataclass
class RoundResult:
    content: str = ""
    thought: ThoughtSummary | None = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)


@dataclass
class TurnResult:
    content: str
    rounds: int
    state: TurnState
    usage: UsageMetadata = field(default_factory=UsageMetadata)


@dataclass
class _TurnProgress:
    state: TurnState = TurnState.PREPARING
    rounds: list[RoundResult] = field(default_factory=list)
    usage: UsageMetadata = field(default_factory=UsageMetadata)

    def add_usage(self, usage: UsageMetadata | None) -> None:
        if usage is None:
            return
        self.usage.prompt_token_count += usage.prompt_token_count
        self.usage.candidates_token_count += usage.candidates_token_count
        self.usage.total_token_count += usage.total_token_count

    def final_content(self) -> str:
        for round_result in reversed(self.rounds):
            if round_result.content:
                return round_result.content
        return ""

    def result(self) -> TurnResult:
        return TurnResult(
            content=self.final_content(),
            rounds=len(self.rounds),
            state=self.state,
            usage=self.usage,
        )


def make_prompt_id(session_id: str, history_length: int) -> str:
    return f"{session_id}{PROMPT_ID_SEPARATOR}{history_length}"


def merge_part_list_unions(groups: Sequence[Any]) -> Any:
    """Combine per-call response parts into one query, flattening one level only.

    A single group is returned unchanged.
    """

    if not groups:
        return []
    if len(groups) == 1:
        return groups[0]
    merged: list[Any] = []
    for group in groups:
        if isinstance(group, (list, tuple)):
            merged.extend(group)
        else:
            merged.append(group)
    return merged


def filter_completed_tools(
    completed: Sequence[CompletedToolCall],
) -> list[CompletedToolCall]:
    """Keep calls whose results may be sent back to the model."""

    return [
        call
        for call in completed
        if call.status in TERMINAL_TOOL_STATUSES
        and call.response_parts is not None
        and not call.request.is_client_initiated
    ]


class TurnRunner:
    """Drive one Turn: stream rounds from the engine and run requested tools."""

    def __init__(
        self,
        engine: Engine,
        scheduler: Scheduler,
        *,
        session_id: str,
        workdir: Path,
        tool_batch_timeout: float = 60.0,
        max_rounds: int = 25,
    ) -> None:
        self._engine = engine
        self._scheduler = scheduler
        self._session_id = session_id
        self._workdir = workdir
        self._tool_batch_timeout = tool_batch_timeout
        self._max_rounds = max_rounds

    async def submit_query(
        self,
        query: Any,
        signal: AbortSignal,
        timeout: float | None = None,
    ) -> TurnResult:
        """Run the Turn to completion and return only the final content."""

        progress = _TurnProgress()

        async def _drain() -> None:
            async with aclosing(self._run_rounds(query, signal, progress)) as events:
                async for _event in events:
                    pass

        try:
            if timeout is None:
                await _drain()
            else:
                await asyncio.wait_for(_drain(), timeout=timeout)
        except asyncio.TimeoutError:
            signal.abort("Turn timed out")
            progress.state = TurnState.TIMEOUT
            raise TurnTimeoutError(
                f"Request timed out after {timeout} seconds"
            ) from None
        return progress.result()

    async def stream_turn(
        self, query: Any, signal: AbortSignal
    ) -> AsyncIterator[TurnEvent]:
        """Yield every engine event and tool-execution marker as it happens."""

        progress = _TurnProgress()
        async with aclosing(self._run_rounds(query, signal, progress)) as events:
            async for event in events:
                yield event

    async def _run_rounds(
        self, raw_query: Any, signal: AbortSignal, progress: _TurnProgress
    ) -> AsyncIterator[TurnEvent]:
        try:
            async with aclosing(self._rounds(raw_query, signal, progress)) as events:
                async for event in events:
                    yield event
        except TurnTimeoutError:
            progress.state = TurnState.TIMEOUT
            raise
        except TurnCancelledError:
            progress.state = TurnState.CANCELLED
            raise
        except Exception:
            progress.state = TurnState.ERROR
            raise

    async def _rounds(
        self, raw_query: Any, signal: AbortSignal, progress: _TurnProgress
    ) -> AsyncIterator[TurnEvent]:
        prepared = await prepare_query(raw_query, self._workdir, signal)
        if not prepared.should_proceed or prepared.query_to_send is None:
            logger.info("Session %s: no query to send", self._session_id)
            progress.state = TurnState.DONE
            yield NoQueryEvent()
            return

        query: PartListUnion = prepared.query_to_send
        while True:
            if len(progress.rounds) >= self._max_rounds:
                logger.warning(
                    "Session %s: stopping after %s rounds", self._session_id, self._max_rounds
                )
                progress.state = TurnState.DONE
                yield ToolExecutionStatus(
                    status="stopped",
                    message=f"Stopped after reaching the limit of {self._max_rounds} rounds",
                )
                return

            progress.state = TurnState.STREAMING
            round_result = RoundResult()
            progress.rounds.append(round_result)
            prompt_id = make_prompt_id(self._session_id, self._engine.history_length)

            async with aclosing(
                self._stream_round(query, signal, prompt_id, round_result)
            ) as events:
                async for event in events:
                    yield event
            progress.add_usage(self._engine.last_usage)

            if not round_result.tool_calls:
                progress.state = TurnState.DONE
                return

            progress.state = TurnState.EXECUTING_TOOLS
            names = [request.name for request in round_result.tool_calls]
            yield ToolExecutionStatus(status="started", calls=names)
            completed = await self._run_tool_batch(round_result.tool_calls, signal)
            counts = Counter(call.status for call in completed)
            yield ToolExecutionStatus(status="finished", calls=names, counts=dict(counts))

            eligible = filter_completed_tools(completed)
            if not eligible or all(call.status == "cancelled" for call in eligible):
                logger.info(
                    "Session %s: no tool results to send back, finishing turn",
                    self._session_id,
                )
                progress.state = TurnState.DONE
                return

            query = merge_part_list_unions(
                [call.response_parts for call in eligible]
            )

    async def _stream_round(
        self,
        query: PartListUnion,
        signal: AbortSignal,
        prompt_id: str,
        round_result: RoundResult,
    ) -> AsyncIterator[StreamEvent]:
        try:
            async with aclosing(
                self._engine.send_message_stream(query, signal, prompt_id)
            ) as stream:
                async for event in stream:
                    self._observe(event, round_result)
                    yield event
        except ChatRelayError:
            raise
        except BackendError as exc:
            logger.error("Backend error for session %s: %s", self._session_id, exc.detail)
            raise EngineError(_describe_backend_error(exc), detail=exc.detail) from exc
        except Exception as exc:
            logger.exception("Engine failure for session %s", self._session_id)
            raise EngineError(str(exc) or type(exc).__name__) from exc

    def _observe(self, event: StreamEvent, round_result: RoundResult) -> None:
        logger.debug("Session %s event: %s", self._session_id, event)
        if isinstance(event, ContentEvent):
            round_result.content += event.value
        elif isinstance(event, ThoughtEvent):
            round_result.thought = event.value
        elif isinstance(event, ToolCallRequestEvent):
            round_result.tool_calls.append(event.value)
        elif isinstance(event, UserCancelledEvent):
            logger.info("Session %s: round cancelled", self._session_id)
        elif isinstance(event, ErrorEvent):
            logger.warning("Session %s: engine reported %s", self._session_id, event.value)
        elif isinstance(event, ChatCompressedEvent):
            logger.info("Session %s: history compressed %s", self._session_id, event.value)

    async def _run_tool_batch(
        self, requests: list[ToolCallRequest], signal: AbortSignal
    ) -> list[CompletedToolCall]:
        logger.info(
            "Session %s: scheduling %s tool call(s): %s",
            self._session_id,
            len(requests),
            ", ".join(request.name for request in requests),
        )
        completion = self._scheduler.schedule(requests, signal)
        try:
            return await asyncio.wait_for(
                asyncio.shield(completion), timeout=self._tool_batch_timeout
            )
        except asyncio.TimeoutError:
            signal.abort("Tool execution timed out")
            raise TurnTimeoutError(
                f"Tool execution timed out after {self._tool_batch_timeout} seconds"
            ) from None


def _describe_backend_error(exc: BackendError) -> str:
    detail = exc.detail
    if isinstance(detail, dict):
        message = detail.get("message")
        if isinstance(message, str) and message:
            return message
    return str(detail)


__all__ = [
    "PROMPT_ID_SEPARATOR",
    "RoundResult",
    "TurnResult",
    "TurnRunner",
    "TurnState",
    "filter_completed_tools",
    "make_prompt_id",
    "merge_part_list_unions",
]
