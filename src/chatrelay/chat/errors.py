"""Error taxonomy shared by the orchestration loop, adapter and routers."""

from __future__ import annotations

from typing import Any


class ChatRelayError(Exception):
    """Base class for errors surfaced to API callers."""

    error_type = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, detail: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_payload(self) -> dict[str, Any]:
        return {"error": {"message": self.message, "type": self.error_type}}


class InvalidRequestError(ChatRelayError):
    """The caller sent a request the service cannot act on."""

    error_type = "invalid_request_error"
    status_code = 400


class AuthorizationError(ChatRelayError):
    """The backend rejected our credentials; the caller must re-authenticate."""

    error_type = "authentication_error"
    status_code = 401


class EngineError(ChatRelayError):
    """The engine failed while producing a response for the current turn."""

    error_type = "engine_error"
    status_code = 502


class ToolExecutionError(ChatRelayError):
    """A single tool call failed; reported back to the model, never fatal."""

    error_type = "tool_error"
    status_code = 500


class TurnTimeoutError(ChatRelayError):
    """The turn or one of its tool batches exceeded its time budget."""

    error_type = "timeout"
    status_code = 504


class TurnCancelledError(ChatRelayError):
    """The turn's abort signal fired before the work finished."""

    error_type = "cancelled"
    status_code = 499


class ProtocolError(ChatRelayError):
    """Translation between the content model and the backend wire format failed."""

    error_type = "protocol_error"
    status_code = 502


__all__ = [
    "AuthorizationError",
    "ChatRelayError",
    "EngineError",
    "InvalidRequestError",
    "ProtocolError",
    "ToolExecutionError",
    "TurnCancelledError",
    "TurnTimeoutError",
]
