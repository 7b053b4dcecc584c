"""Chat orchestrator coordinating sessions, the round loop and the backend."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from ..completions import CompletionsClient
from ..schemas.chat import ChatCompletionRequest
from ..services.transcripts import TranscriptWriter
from .adapter import CompletionsContentGenerator, to_backend_response
from .cancellation import AbortSignal
from .content import GenerateContentResponse, Part, PartListUnion
from .engine import ChatEngine, ContentGenerator
from .errors import ChatRelayError, InvalidRequestError
from .events import CompletedToolCall, TurnEvent
from .scheduler import ToolScheduler
from .sessions import Session, SessionRegistry, compose_session_key
from .tools import ToolRegistry, default_tool_registry
from .transport import TurnStream
from .turns import TurnRunner

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

GeneratorFactory = Callable[[str | None], ContentGenerator]


def extract_query(payload: ChatCompletionRequest) -> PartListUnion:
    """Return the last message's content as a query."""

    messages = payload.messages
    if not messages:
        raise InvalidRequestError("Invalid messages array")

    content = messages[-1].content
    if isinstance(content, list):
        parts = [
            Part.from_text(fragment["text"])
            for fragment in content
            if fragment.get("type") == "text" and isinstance(fragment.get("text"), str)
        ]
        if not parts:
            raise InvalidRequestError("No user message provided")
        return parts
    if not content:
        raise InvalidRequestError("No user message provided")
    return content


def extract_system_instruction(payload: ChatCompletionRequest) -> str | None:
    for message in payload.messages or []:
        if message.role != "system":
            continue
        content = message.content
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "\n".join(
                fragment["text"]
                for fragment in content
                if isinstance(fragment.get("text"), str)
            )
    return None


def _log_completed_tools(completed: list[CompletedToolCall]) -> None:
    for call in completed:
        logger.info(
            "Tool %s (%s) finished with status %s",
            call.request.name,
            call.request.call_id,
            call.status,
        )


class ChatOrchestrator:
    """High-level coordination for chat sessions."""

    def __init__(
        self,
        settings: Settings,
        *,
        registry: SessionRegistry | None = None,
        tool_registry: ToolRegistry | None = None,
        generator_factory: GeneratorFactory | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry or SessionRegistry()
        self._tools = tool_registry or default_tool_registry()
        self._generator_factory = generator_factory or self._default_generator
        transcript_dir = settings.transcript_log_dir
        self._transcripts = (
            TranscriptWriter(transcript_dir) if transcript_dir is not None else None
        )

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def _default_generator(self, api_key: str | None) -> ContentGenerator:
        return CompletionsContentGenerator(
            CompletionsClient(self._settings, api_key=api_key)
        )

    def _resolve_workdir(self, project_path: str | None) -> Path:
        root = self._settings.workspace_root.expanduser().resolve()
        if not project_path:
            return root
        candidate = Path(project_path).expanduser()
        workdir = (candidate if candidate.is_absolute() else root / candidate).resolve()
        if not workdir.is_dir():
            raise InvalidRequestError(f"Project path {project_path} is not a directory")
        return workdir

    def _model_for(self, payload: ChatCompletionRequest) -> str:
        return payload.model or self._settings.default_model

    async def _session_for(self, payload: ChatCompletionRequest) -> Session:
        workdir = self._resolve_workdir(payload.project_path)
        model = self._model_for(payload)
        approval_mode = self._settings.approval_mode
        key = compose_session_key(
            payload.session_id, workdir, model, approval_mode, payload.api_key
        )

        async def factory(session_key: str) -> Session:
            engine = ChatEngine(
                self._generator_factory(payload.api_key),
                model=model,
                system_instruction=self._settings.system_prompt,
                tools=self._tools.declarations(),
                compression_token_threshold=self._settings.compression_token_threshold,
            )
            scheduler = ToolScheduler(
                self._tools,
                workdir=workdir,
                approval_mode=approval_mode,
                shell_timeout_seconds=self._settings.shell_timeout_seconds,
                on_all_tool_calls_complete=_log_completed_tools,
            )
            return Session(
                key=session_key,
                session_id=payload.session_id,
                workdir=workdir,
                engine=engine,
                scheduler=scheduler,
            )

        return await self._registry.get_or_create(key, factory)

    def _runner_for(self, session: Session, payload: ChatCompletionRequest) -> TurnRunner:
        session.engine.update_config(
            system_instruction=extract_system_instruction(payload),
            temperature=payload.temperature,
            top_p=payload.top_p,
            max_output_tokens=payload.max_tokens,
        )
        return TurnRunner(
            session.engine,
            session.scheduler,
            session_id=session.session_id,
            workdir=session.workdir,
            tool_batch_timeout=self._settings.tool_batch_timeout_seconds,
            max_rounds=self._settings.max_rounds,
        )

    def _deadline_for(self, payload: ChatCompletionRequest) -> float:
        return payload.timeout or self._settings.request_deadline_seconds

    async def complete(self, payload: ChatCompletionRequest) -> dict[str, Any]:
        """Run a buffered Turn and return a ``chat.completion`` envelope."""

        query = extract_query(payload)
        session = await self._session_for(payload)
        signal = AbortSignal()

        async with session.lock:
            runner = self._runner_for(session, payload)
            try:
                result = await runner.submit_query(
                    query, signal, timeout=self._deadline_for(payload)
                )
            except ChatRelayError as exc:
                await self._record(session, payload, {"state": "error", "error": exc.message})
                raise
            finally:
                signal.abort("Turn finished")
            await self._record(
                session,
                payload,
                {"state": result.state.value, "rounds": result.rounds, "content": result.content},
            )

        response = GenerateContentResponse(
            parts=[Part.from_text(result.content)] if result.content else [],
            finish_reason="stop",
            usage_metadata=result.usage,
        )
        envelope = to_backend_response(response, model=self._model_for(payload))
        envelope["session_id"] = payload.session_id
        return envelope

    async def open_stream(self, payload: ChatCompletionRequest) -> TurnStream:
        """Validate the request and return a frame stream for one Turn."""

        query = extract_query(payload)
        session = await self._session_for(payload)
        signal = AbortSignal()
        return TurnStream(
            self._stream_events(session, payload, query, signal),
            signal=signal,
            model=self._model_for(payload),
            keepalive_seconds=self._settings.stream_keepalive_seconds,
            deadline_seconds=self._deadline_for(payload),
        )

    async def _stream_events(
        self,
        session: Session,
        payload: ChatCompletionRequest,
        query: PartListUnion,
        signal: AbortSignal,
    ) -> AsyncIterator[TurnEvent]:
        async with session.lock:
            runner = self._runner_for(session, payload)
            try:
                async with aclosing(runner.stream_turn(query, signal)) as events:
                    async for event in events:
                        yield event
            except ChatRelayError as exc:
                await self._record(session, payload, {"state": "error", "error": exc.message})
                raise
            await self._record(session, payload, {"state": "done"})

    async def _record(
        self,
        session: Session,
        payload: ChatCompletionRequest,
        outcome: dict[str, Any],
    ) -> None:
        if self._transcripts is None or payload.disable_telemetry:
            return
        try:
            await self._transcripts.write(
                session_id=session.session_id,
                session_created_at=session.created_at,
                request_snapshot=payload.snapshot(),
                history=session.engine.snapshot(),
                outcome=outcome,
            )
        except OSError:
            logger.warning("Failed to write transcript for %s", session.key, exc_info=True)

    async def clear_session(self, session_id: str) -> list[str]:
        return await self._registry.evict_prefix(session_id)

    def list_sessions(self) -> list[str]:
        return self._registry.keys()

    async def shutdown(self) -> None:
        """Clean up held resources."""

        try:
            await asyncio.wait_for(CompletionsClient.aclose_shared(), timeout=2.0)
        except (asyncio.TimeoutError, Exception) as exc:
            logger.warning("Error closing backend client: %s", exc)
        await self._registry.clear()


__all__ = [
    "ChatOrchestrator",
    "GeneratorFactory",
    "extract_query",
    "extract_system_instruction",
]
