"""Chat-completions compatible API routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, Response
from sse_starlette.sse import EventSourceResponse

from ..chat.errors import ChatRelayError
from ..chat.orchestrator import ChatOrchestrator
from ..chat.transport import error_payload
from ..schemas.chat import (
    ChatCompletionRequest,
    SessionDeleteResponse,
    SessionListResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["chat"])

# Idle keepalives are written by the turn stream itself.
_PING_INTERVAL_SECONDS = 24 * 60 * 60


def _orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.chat_orchestrator


def _error_response(exc: BaseException) -> JSONResponse:
    status_code = (
        exc.status_code
        if isinstance(exc, ChatRelayError)
        else status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    return JSONResponse(status_code=status_code, content=error_payload(exc))


@router.post("/chat/completions", response_model=None, status_code=200)
async def create_chat_completion(
    payload: ChatCompletionRequest,
    request: Request,
) -> Response:
    """Run one Turn, buffered or streamed through Server-Sent Events."""

    orchestrator = _orchestrator(request)

    if not payload.stream:
        try:
            envelope = await orchestrator.complete(payload)
        except ChatRelayError as exc:
            logger.warning("Chat completion failed: %s", exc.message)
            return _error_response(exc)
        except Exception as exc:
            logger.exception("Unexpected error during chat completion")
            return _error_response(exc)
        return JSONResponse(envelope)

    try:
        stream = await orchestrator.open_stream(payload)
    except ChatRelayError as exc:
        return _error_response(exc)

    try:
        await stream.prime()
    except ChatRelayError as exc:
        stream.discard()
        logger.warning("Streaming turn failed before first frame: %s", exc.message)
        return _error_response(exc)
    except BaseException:
        stream.discard()
        raise

    return EventSourceResponse(stream.frames(), ping=_PING_INTERVAL_SECONDS)


@router.get("/chat/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request) -> SessionListResponse:
    return SessionListResponse(sessions=_orchestrator(request).list_sessions())


@router.delete("/chat/sessions/{session_id}", response_model=SessionDeleteResponse)
async def delete_session(session_id: str, request: Request) -> SessionDeleteResponse:
    removed = await _orchestrator(request).clear_session(session_id)
    if removed:
        message = f"Session {session_id} cleared"
    else:
        message = f"No active session found for {session_id}"
    return SessionDeleteResponse(message=message, removed=removed)


__all__ = ["router"]
