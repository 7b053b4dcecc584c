"""Tests for the chat orchestrator request handling."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator

import pytest

from chatrelay.chat.content import GenerateContentRequest, GenerateContentResponse, Part
from chatrelay.chat.errors import InvalidRequestError, TurnTimeoutError
from chatrelay.chat.orchestrator import (
    ChatOrchestrator,
    extract_query,
    extract_system_instruction,
)
from chatrelay.config import Settings
from chatrelay.schemas.chat import ChatCompletionRequest


class EchoGenerator:
    def __init__(self, *, hang: bool = False) -> None:
        self.hang = hang
        self.requests: list[GenerateContentRequest] = []

    async def generate_content_stream(
        self, request: GenerateContentRequest
    ) -> AsyncIterator[GenerateContentResponse]:
        self.requests.append(request)
        if self.hang:
            await asyncio.Event().wait()
        yield GenerateContentResponse(parts=[Part.from_text("echo")])


def _request(**kwargs: Any) -> ChatCompletionRequest:
    kwargs.setdefault("messages", [{"role": "user", "content": "Hi"}])
    return ChatCompletionRequest(**kwargs)


def test_extract_query_uses_last_message_text() -> None:
    payload = _request(
        messages=[
            {"role": "user", "content": "first"},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "look at "},
                    {"type": "image_url", "image_url": {"url": "x"}},
                    {"type": "text", "text": "this"},
                ],
            },
        ]
    )

    query = extract_query(payload)

    assert [part.text for part in query] == ["look at ", "this"]


def test_extract_query_rejects_empty_input() -> None:
    with pytest.raises(InvalidRequestError, match="Invalid messages array"):
        extract_query(ChatCompletionRequest())
    with pytest.raises(InvalidRequestError, match="No user message provided"):
        extract_query(_request(messages=[{"role": "user", "content": []}]))


def test_system_message_overrides_instruction() -> None:
    payload = _request(
        messages=[
            {"role": "system", "content": "Be terse."},
            {"role": "user", "content": "Hi"},
        ]
    )

    assert extract_system_instruction(payload) == "Be terse."
    assert extract_system_instruction(_request()) is None


@pytest.mark.anyio
async def test_request_timeout_raises_and_releases_session(settings: Settings) -> None:
    generator = EchoGenerator(hang=True)
    orchestrator = ChatOrchestrator(settings, generator_factory=lambda _key: generator)

    with pytest.raises(TurnTimeoutError, match="Request timed out after 0.1 seconds"):
        await orchestrator.complete(_request(timeout=0.1))

    generator.hang = False
    envelope = await orchestrator.complete(_request())
    assert envelope["choices"][0]["message"]["content"] == "echo"
    session = orchestrator.registry.get(orchestrator.list_sessions()[0])
    assert session is not None
    assert [content.role for content in session.engine.history] == ["user", "model"]


@pytest.mark.anyio
async def test_transcripts_follow_telemetry_flag(settings: Settings, tmp_path: Path) -> None:
    log_dir = tmp_path / "transcripts"
    configured = settings.model_copy(update={"transcript_log_dir": log_dir})
    orchestrator = ChatOrchestrator(configured, generator_factory=lambda _key: EchoGenerator())

    await orchestrator.complete(_request(session_id="quiet", disable_telemetry=True))
    assert not log_dir.exists()

    await orchestrator.complete(_request(session_id="loud", api_key="sk-secret"))
    files = list(log_dir.rglob("*.log"))
    assert len(files) == 1
    text = files[0].read_text(encoding="utf-8")
    assert "sk-secret" not in text
    entry = json.loads(text.split("=" * 80)[1])
    assert entry["outcome"]["state"] == "done"
    assert entry["session_id"] == "loud"


@pytest.mark.anyio
async def test_project_path_must_be_a_directory(settings: Settings, tmp_path: Path) -> None:
    (tmp_path / "project").mkdir()
    orchestrator = ChatOrchestrator(settings, generator_factory=lambda _key: EchoGenerator())

    with pytest.raises(InvalidRequestError):
        await orchestrator.complete(_request(project_path="missing"))

    await orchestrator.complete(_request(project_path="project"))
    session = orchestrator.registry.get(orchestrator.list_sessions()[0])
    assert session is not None
    assert session.workdir == (tmp_path / "project").resolve()
