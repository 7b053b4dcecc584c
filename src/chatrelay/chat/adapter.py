"""Translate the generic content model to and from the chat-completions wire format."""

from __future__ import annotations

import json
import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterable, Iterable, Mapping, Sequence

from json_repair import repair_json

from ..completions import CompletionsClient
from .content import (
    Content,
    ContentListUnion,
    CountTokensResponse,
    FunctionCall,
    FunctionDeclaration,
    GenerateContentRequest,
    GenerateContentResponse,
    Part,
    UsageMetadata,
)
from .errors import ProtocolError

logger = logging.getLogger(__name__)

_TOOL_CALL_FINISH_REASONS = {"tool_calls", "function_call"}
_REASONING_DELTA_KEYS = ("reasoning_content", "reasoning")


def to_contents(contents: ContentListUnion) -> list[Content]:
    """Normalize any accepted ``contents`` shape into a list of ``Content``."""

    if isinstance(contents, (list, tuple)):
        return [_to_content(item) for item in contents]
    return [_to_content(contents)]


def _to_content(item: Any) -> Content:
    if isinstance(item, (list, tuple)):
        raise ProtocolError("Array content not supported in this context")
    if isinstance(item, Content):
        return item
    if isinstance(item, str):
        return Content(role="user", parts=[Part.from_text(item)])
    if isinstance(item, Part):
        return Content(role="user", parts=[item])
    raise ProtocolError(f"Unsupported content item: {type(item).__name__}")


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def _is_tool_result(part: Part) -> bool:
    response = part.function_response
    if response is None:
        return False
    if not isinstance(response.id, str) or not isinstance(response.name, str):
        return False
    return response.output is not None or response.error is not None


def to_backend_messages(contents: Sequence[Content]) -> list[dict[str, Any]]:
    """Render contents as chat-completions messages.

    Each content entry may yield up to three messages, in this order: joined
    text, joined tool results (tagged with the first result's call id), and a
    single assistant message carrying every function call.
    """

    messages: list[dict[str, Any]] = []
    for content in contents:
        role = "assistant" if content.role == "model" else content.role
        parts = content.parts or []

        text_parts = [part for part in parts if part.is_text]
        if text_parts:
            messages.append(
                {
                    "role": role,
                    "content": "\n".join(part.text or "" for part in text_parts),
                }
            )

        result_parts = [part for part in parts if _is_tool_result(part)]
        if result_parts:
            rendered: list[str] = []
            for part in result_parts:
                response = part.function_response
                assert response is not None
                if response.error:
                    rendered.append(f"Error: {response.error}")
                else:
                    rendered.append(response.output or "")
            first = result_parts[0].function_response
            assert first is not None
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": first.id,
                    "content": "\n".join(rendered),
                }
            )

        call_parts = [
            part
            for part in parts
            if part.function_call is not None
            and isinstance(part.function_call.name, str)
            and part.function_call.args is not None
        ]
        if call_parts:
            if content.role != "model":
                raise ProtocolError(
                    f"Function calls cannot come from {content.role} role"
                )
            messages.append(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": _new_call_id(),
                            "type": "function",
                            "function": {
                                "name": part.function_call.name,
                                "arguments": json.dumps(part.function_call.args),
                            },
                        }
                        for part in call_parts
                        if part.function_call is not None
                    ],
                }
            )

        if not text_parts and not result_parts and not call_parts:
            raise ProtocolError(
                "Content parts not processed: "
                + json.dumps(content.to_dict(), indent=2, default=repr),
                detail=content.to_dict(),
            )

    return messages


def to_backend_tools(
    declarations: Iterable[FunctionDeclaration],
) -> list[dict[str, Any]]:
    tools: list[dict[str, Any]] = []
    for declaration in declarations:
        if not declaration.name:
            raise ProtocolError("Function declaration must have a name")
        tools.append(
            {
                "type": "function",
                "function": {
                    "name": declaration.name,
                    "description": declaration.description or "",
                    "parameters": declaration.parameters or {},
                },
            }
        )
    return tools


def parse_tool_arguments(raw: str) -> dict[str, Any]:
    """Parse accumulated tool-call arguments, repairing malformed JSON once."""

    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        try:
            parsed = json.loads(repair_json(raw))
        except (ValueError, TypeError) as exc:
            raise ProtocolError(
                f"Unparseable tool call arguments: {raw!r}", detail=raw
            ) from exc
        if parsed == {} and raw.strip(" \t\r\n{}"):
            raise ProtocolError(
                f"Unparseable tool call arguments: {raw!r}", detail=raw
            )
        logger.debug("Repaired tool call arguments %r -> %r", raw, parsed)
    if not isinstance(parsed, dict):
        raise ProtocolError(
            f"Tool call arguments are not a JSON object: {raw!r}", detail=raw
        )
    return parsed


def estimate_tokens(messages: Sequence[Mapping[str, Any]]) -> int:
    """Approximate a token count as one token per four characters.

    This is a heuristic; it will not match the backend's own accounting.
    """

    total_text = " ".join(str(message.get("content") or "") for message in messages)
    return math.ceil(len(total_text) / 4)


def _usage_from_backend(usage: Any) -> UsageMetadata | None:
    if not isinstance(usage, Mapping):
        return None
    return UsageMetadata(
        prompt_token_count=int(usage.get("prompt_tokens") or 0),
        candidates_token_count=int(usage.get("completion_tokens") or 0),
        total_token_count=int(usage.get("total_tokens") or 0),
    )


def _usage_to_backend(usage: UsageMetadata | None) -> dict[str, int]:
    if usage is None:
        return {}
    return {
        "prompt_tokens": usage.prompt_token_count,
        "completion_tokens": usage.candidates_token_count,
        "total_tokens": usage.total_token_count,
    }


@dataclass
class _ToolCallAccumulator:
    name: str = ""
    arguments: str = ""
    call_id: str | None = None


def merge_tool_call_deltas(
    accumulator: dict[int, _ToolCallAccumulator],
    deltas: Any,
) -> None:
    """Fold streamed tool-call deltas into ``accumulator`` keyed by index."""

    for delta in deltas or []:
        if not isinstance(delta, dict):
            continue

        index = delta.get("index")
        delta_id = delta.get("id")
        if not isinstance(index, int) or index < 0:
            index = None
            if isinstance(delta_id, str):
                for existing_index, existing in accumulator.items():
                    if existing.call_id == delta_id:
                        index = existing_index
                        break
            if index is None:
                index = len(accumulator)

        entry = accumulator.setdefault(index, _ToolCallAccumulator())
        if isinstance(delta_id, str) and delta_id:
            entry.call_id = delta_id

        function_delta = delta.get("function") or {}
        if function_name := function_delta.get("name"):
            entry.name = function_name
        if arguments_fragment := function_delta.get("arguments"):
            entry.arguments += arguments_fragment


def _flush_tool_calls(
    accumulator: dict[int, _ToolCallAccumulator],
) -> GenerateContentResponse:
    parts = [
        Part(
            function_call=FunctionCall(
                name=entry.name,
                args=parse_tool_arguments(entry.arguments),
                id=entry.call_id,
            )
        )
        for _index, entry in sorted(accumulator.items())
    ]
    accumulator.clear()
    return GenerateContentResponse(parts=parts)


async def stream_from_backend(
    chunks: AsyncIterable[Mapping[str, Any]],
) -> AsyncGenerator[GenerateContentResponse, None]:
    """Rebuild content responses from a chat-completions delta stream."""

    tool_calls: dict[int, _ToolCallAccumulator] = {}
    finish_reason: str | None = None
    usage: UsageMetadata | None = None
    async for chunk in chunks:
        # Usage may arrive on the finishing chunk or on a trailing chunk with no choices.
        usage = _usage_from_backend(chunk.get("usage")) or usage
        choices = chunk.get("choices") or []
        if not choices or finish_reason:
            continue
        choice = choices[0]
        delta = choice.get("delta") or {}

        delta_content = delta.get("content")
        if isinstance(delta_content, str) and delta_content:
            yield GenerateContentResponse(parts=[Part.from_text(delta_content)])

        for key in _REASONING_DELTA_KEYS:
            reasoning = delta.get(key)
            if isinstance(reasoning, str) and reasoning:
                yield GenerateContentResponse(
                    parts=[Part(text=reasoning, thought=True)]
                )
                break

        if tool_deltas := delta.get("tool_calls"):
            merge_tool_call_deltas(tool_calls, tool_deltas)

        finish_reason = choice.get("finish_reason")
        if finish_reason in _TOOL_CALL_FINISH_REASONS and tool_calls:
            yield _flush_tool_calls(tool_calls)

    if finish_reason:
        yield GenerateContentResponse(
            parts=[], finish_reason=finish_reason, usage_metadata=usage
        )


def from_backend_response(completion: Mapping[str, Any]) -> GenerateContentResponse:
    """Convert a complete ``chat.completion`` object into a content response."""

    choices = completion.get("choices") or []
    choice = choices[0] if choices else None
    message = choice.get("message") if isinstance(choice, Mapping) else None
    if not isinstance(message, Mapping) or (
        not message.get("content") and not message.get("tool_calls")
    ):
        raise ProtocolError("No valid choices in backend response", detail=completion)

    parts: list[Part] = []
    content = message.get("content")
    if isinstance(content, str) and content:
        parts.append(Part.from_text(content))
    for tool_call in message.get("tool_calls") or []:
        function = tool_call.get("function") or {}
        parts.append(
            Part(
                function_call=FunctionCall(
                    name=function.get("name") or "",
                    args=parse_tool_arguments(function.get("arguments") or ""),
                    id=tool_call.get("id"),
                )
            )
        )

    return GenerateContentResponse(
        parts=parts,
        finish_reason=choice.get("finish_reason") if choice else None,
        usage_metadata=_usage_from_backend(completion.get("usage")),
    )


def to_backend_response(
    response: GenerateContentResponse,
    *,
    model: str,
    completion_id: str | None = None,
    created: int | None = None,
) -> dict[str, Any]:
    """Render a content response as a ``chat.completion`` object."""

    message: dict[str, Any] = {"role": "assistant", "content": response.text}
    calls = response.function_calls
    if calls:
        message["tool_calls"] = [
            {
                "id": call.id or _new_call_id(),
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.args)},
            }
            for call in calls
        ]
        if not response.text:
            message["content"] = None

    finish_reason = response.finish_reason or ("tool_calls" if calls else "stop")
    return {
        "id": completion_id or f"chatcmpl-{uuid.uuid4().hex}",
        "object": "chat.completion",
        "created": created if created is not None else int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": finish_reason,
            }
        ],
        "usage": _usage_to_backend(response.usage_metadata),
    }


class CompletionsContentGenerator:
    """Content generator backed by a chat-completions endpoint."""

    def __init__(self, client: CompletionsClient) -> None:
        self._client = client

    def _build_payload(self, request: GenerateContentRequest) -> dict[str, Any]:
        messages = to_backend_messages(to_contents(request.contents))
        config = request.config
        if config.system_instruction:
            messages.insert(0, {"role": "system", "content": config.system_instruction})

        payload: dict[str, Any] = {"model": request.model, "messages": messages}
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if config.top_p is not None:
            payload["top_p"] = config.top_p
        if config.max_output_tokens is not None:
            payload["max_tokens"] = config.max_output_tokens
        tools = to_backend_tools(config.tools)
        if tools:
            payload["tools"] = tools
        return payload

    @staticmethod
    def _headers(request: GenerateContentRequest) -> dict[str, str] | None:
        if request.prompt_id is None:
            return None
        return {"X-Request-Id": request.prompt_id}

    async def generate_content_stream(
        self, request: GenerateContentRequest
    ) -> AsyncGenerator[GenerateContentResponse, None]:
        payload = self._build_payload(request)
        chunks = self._client.stream_chat(payload, headers=self._headers(request))
        async for response in stream_from_backend(chunks):
            yield response

    async def generate_content(
        self, request: GenerateContentRequest
    ) -> GenerateContentResponse:
        payload = self._build_payload(request)
        completion = await self._client.create_completion(
            payload, headers=self._headers(request)
        )
        return from_backend_response(completion)

    async def count_tokens(self, contents: ContentListUnion) -> CountTokensResponse:
        messages = to_backend_messages(to_contents(contents))
        return CountTokensResponse(total_tokens=estimate_tokens(messages))

    async def embed_content(self, *args: Any, **kwargs: Any) -> Any:
        raise NotImplementedError("Embedding requests are not supported by this backend")


__all__ = [
    "CompletionsContentGenerator",
    "estimate_tokens",
    "from_backend_response",
    "merge_tool_call_deltas",
    "parse_tool_arguments",
    "stream_from_backend",
    "to_backend_messages",
    "to_backend_response",
    "to_backend_tools",
    "to_contents",
]
