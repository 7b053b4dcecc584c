"""Per-session chat engine: owns history and turns queries into typed events."""

from __future__ import annotations

import logging
import re
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Protocol, Sequence

from .adapter import estimate_tokens, to_backend_messages
from .cancellation import AbortSignal
from .content import (
    Content,
    FunctionDeclaration,
    GenerateContentConfig,
    GenerateContentRequest,
    GenerateContentResponse,
    Part,
    PartListUnion,
    UsageMetadata,
    to_parts,
)
from .errors import TurnCancelledError
from .events import (
    ChatCompressedEvent,
    ContentEvent,
    ErrorEvent,
    StreamEvent,
    ThoughtEvent,
    ThoughtSummary,
    ToolCallRequest,
    ToolCallRequestEvent,
    UserCancelledEvent,
)

logger = logging.getLogger(__name__)

_THOUGHT_SUBJECT = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)
_BLOCKED_FINISH_REASONS = {"content_filter"}


class ContentGenerator(Protocol):
    def generate_content_stream(
        self, request: GenerateContentRequest
    ) -> AsyncIterator[GenerateContentResponse]: ...


def parse_thought(text: str) -> ThoughtSummary:
    """Split a thought into its bolded subject and the remaining description."""

    match = _THOUGHT_SUBJECT.search(text)
    if match is None:
        return ThoughtSummary(subject="", description=text.strip())
    subject = match.group(1).strip()
    description = (text[: match.start()] + text[match.end() :]).strip()
    return ThoughtSummary(subject=subject, description=description)


def _merge_text_parts(parts: Sequence[Part]) -> list[Part]:
    merged: list[Part] = []
    for part in parts:
        if part.is_text and merged and merged[-1].is_text:
            merged[-1] = Part.from_text((merged[-1].text or "") + (part.text or ""))
        else:
            merged.append(part)
    return merged


class ChatEngine:
    """Conversation state for one session.

    The history never contains thought parts. A failed or cancelled round
    rolls back the user content it appended so the next round starts clean.
    """

    def __init__(
        self,
        generator: ContentGenerator,
        *,
        model: str,
        system_instruction: str | None = None,
        tools: Sequence[FunctionDeclaration] = (),
        compression_token_threshold: int = 100_000,
    ) -> None:
        self._generator = generator
        self.model = model
        self.config = GenerateContentConfig(
            system_instruction=system_instruction, tools=list(tools)
        )
        self._compression_token_threshold = compression_token_threshold
        self._history: list[Content] = []
        self.last_usage: UsageMetadata | None = None

    @property
    def history(self) -> list[Content]:
        return list(self._history)

    @property
    def history_length(self) -> int:
        return len(self._history)

    def update_config(
        self,
        *,
        system_instruction: str | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        max_output_tokens: int | None = None,
    ) -> None:
        """Apply per-request generation settings; ``None`` keeps the current value."""

        if system_instruction is not None:
            self.config.system_instruction = system_instruction
        self.config.temperature = temperature
        self.config.top_p = top_p
        self.config.max_output_tokens = max_output_tokens

    def _compress_history(self) -> dict[str, int] | None:
        original = estimate_tokens(to_backend_messages(self._history))
        if original <= self._compression_token_threshold:
            return None

        trimmed = list(self._history)
        while trimmed and (
            estimate_tokens(to_backend_messages(trimmed))
            > self._compression_token_threshold // 2
        ):
            trimmed.pop(0)
        # A conversation must restart on a plain user message.
        while trimmed and (
            trimmed[0].role != "user"
            or any(part.function_response is not None for part in trimmed[0].parts)
        ):
            trimmed.pop(0)

        self._history = trimmed
        new = estimate_tokens(to_backend_messages(trimmed))
        logger.info("Compressed chat history from %s to %s tokens", original, new)
        return {"original_token_count": original, "new_token_count": new}

    async def send_message_stream(
        self,
        query: PartListUnion,
        signal: AbortSignal,
        prompt_id: str,
    ) -> AsyncIterator[StreamEvent]:
        if signal.aborted:
            yield UserCancelledEvent()
            return

        if self._history:
            compressed = self._compress_history()
            if compressed is not None:
                yield ChatCompressedEvent(value=compressed)

        user_content = Content(role="user", parts=to_parts(query))
        self._history.append(user_content)
        request = GenerateContentRequest(
            model=self.model,
            contents=list(self._history),
            config=self.config,
            prompt_id=prompt_id,
        )

        model_parts: list[Part] = []
        try:
            async with aclosing(
                signal.iterate(self._generator.generate_content_stream(request))
            ) as responses:
                async for response in responses:
                    for event in self._events_for(response, prompt_id):
                        yield event
                    model_parts.extend(
                        part for part in response.parts if not part.thought
                    )
                    if response.usage_metadata is not None:
                        self.last_usage = response.usage_metadata
                    if response.finish_reason in _BLOCKED_FINISH_REASONS:
                        yield ErrorEvent(
                            value={
                                "message": "Response blocked by the backend content filter",
                                "finish_reason": response.finish_reason,
                            }
                        )
        except TurnCancelledError:
            self._rollback(user_content)
            yield UserCancelledEvent()
            return
        except BaseException:
            self._rollback(user_content)
            raise

        if model_parts:
            self._history.append(
                Content(role="model", parts=_merge_text_parts(model_parts))
            )

    def _rollback(self, user_content: Content) -> None:
        if self._history and self._history[-1] is user_content:
            self._history.pop()

    def _events_for(
        self, response: GenerateContentResponse, prompt_id: str
    ) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for part in response.parts:
            if part.thought and part.text:
                events.append(ThoughtEvent(value=parse_thought(part.text)))
            elif part.is_text and part.text:
                events.append(ContentEvent(value=part.text))
            elif part.function_call is not None:
                call = part.function_call
                call_id = call.id or f"{call.name}-{int(time.time() * 1000)}"
                events.append(
                    ToolCallRequestEvent(
                        value=ToolCallRequest(
                            call_id=call_id,
                            name=call.name,
                            args=dict(call.args or {}),
                            is_client_initiated=False,
                            prompt_id=prompt_id,
                        )
                    )
                )
        return events

    def snapshot(self) -> list[dict[str, Any]]:
        return [content.to_dict() for content in self._history]


__all__ = ["ChatEngine", "ContentGenerator", "parse_thought"]
