"""Pydantic models for chat requests and responses."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    """Represents a single chat message."""

    role: Literal["system", "user", "assistant", "tool"]
    content: Union[str, List[Dict[str, Any]], None] = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = Field(default=None, alias="tool_call_id")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ChatCompletionRequest(BaseModel):
    """Incoming chat completion request payload."""

    model: Optional[str] = None
    messages: Optional[List[ChatMessage]] = None

    # Basic generation parameters
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = False

    # Session and workspace
    session_id: str = Field(default="default", min_length=1)
    project_path: Optional[str] = None
    api_key: Optional[str] = None
    disable_telemetry: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def snapshot(self) -> dict[str, Any]:
        """Return the request without credentials, for transcripts."""

        return self.model_dump(exclude={"api_key"}, exclude_none=True)


class SessionListResponse(BaseModel):
    sessions: List[str]


class SessionDeleteResponse(BaseModel):
    message: str
    removed: List[str]


__all__ = [
    "ChatCompletionRequest",
    "ChatMessage",
    "SessionDeleteResponse",
    "SessionListResponse",
]
