from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest
from pydantic import AnyHttpUrl, SecretStr

from chatrelay.chat.errors import AuthorizationError
from chatrelay.completions import BackendError, CompletionsClient
from chatrelay.config import Settings


def make_client(
    handler: Callable[[httpx.Request], httpx.Response],
    monkeypatch: pytest.MonkeyPatch,
    *,
    api_key: str | None = None,
    configured_key: str | None = "test",
) -> CompletionsClient:
    settings = Settings(
        backend_api_key=SecretStr(configured_key) if configured_key else None,
        backend_base_url=AnyHttpUrl("https://example.com/api/v1/"),
    )
    client = CompletionsClient(settings, api_key=api_key)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async def _get_http_client() -> httpx.AsyncClient:
        return http_client

    monkeypatch.setattr(client, "_get_http_client", _get_http_client)
    return client


def _sse_body(*payloads: Any) -> bytes:
    frames = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        frames.append(f"data: {data}\n\n")
    return "".join(frames).encode()


def test_parse_event_supports_multiple_data_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client(lambda request: httpx.Response(200), monkeypatch)

    event = client._parse_event(  # type: ignore[attr-defined]
        [
            "event: completion",
            "id: test-id",
            "data: part one",
            "data: part two",
        ]
    )

    assert event.event == "completion"
    assert event.event_id == "test-id"
    assert event.data == "part one\npart two"


def test_request_key_overrides_configured_key(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client(
        lambda request: httpx.Response(200), monkeypatch, api_key="per-request"
    )
    assert client._headers["Authorization"] == "Bearer per-request"  # type: ignore[attr-defined]


def test_missing_key_is_an_authorization_error(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client(
        lambda request: httpx.Response(200), monkeypatch, configured_key=None
    )
    with pytest.raises(AuthorizationError):
        client._headers  # type: ignore[attr-defined]


@pytest.mark.anyio
async def test_stream_chat_yields_chunks_until_done(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse_body(
                {"choices": [{"delta": {"content": "a"}}]},
                "not json",
                {"choices": [{"delta": {"content": "b"}}]},
                "[DONE]",
                {"choices": [{"delta": {"content": "after done"}}]},
            ),
        )

    client = make_client(handler, monkeypatch)
    chunks = [
        chunk
        async for chunk in client.stream_chat(
            {"model": "m", "messages": []}, headers={"X-Request-Id": "s########0"}
        )
    ]

    assert [chunk["choices"][0]["delta"]["content"] for chunk in chunks] == ["a", "b"]
    request = seen[0]
    assert str(request.url) == "https://example.com/api/v1/chat/completions"
    assert request.headers["X-Request-Id"] == "s########0"
    assert json.loads(request.content)["stream"] is True


@pytest.mark.anyio
@pytest.mark.parametrize("status_code", [401, 403])
async def test_auth_failures_map_to_authorization_error(
    monkeypatch: pytest.MonkeyPatch, status_code: int
) -> None:
    client = make_client(
        lambda request: httpx.Response(status_code, json={"error": {"message": "bad key"}}),
        monkeypatch,
    )

    with pytest.raises(AuthorizationError) as excinfo:
        async for _chunk in client.stream_chat({"model": "m", "messages": []}):
            pass
    assert excinfo.value.detail == {"message": "bad key"}


@pytest.mark.anyio
async def test_other_failures_raise_backend_error(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client(
        lambda request: httpx.Response(500, text="upstream exploded"), monkeypatch
    )

    with pytest.raises(BackendError) as excinfo:
        await client.create_completion({"model": "m", "messages": []})
    assert excinfo.value.status_code == 500
    assert excinfo.value.detail == "upstream exploded"


@pytest.mark.anyio
async def test_error_chunk_in_stream_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client(
        lambda request: httpx.Response(
            200, content=_sse_body({"error": {"message": "rate limited"}})
        ),
        monkeypatch,
    )

    with pytest.raises(BackendError) as excinfo:
        async for _chunk in client.stream_chat({"model": "m", "messages": []}):
            pass
    assert excinfo.value.status_code == 502


@pytest.mark.anyio
async def test_transport_errors_become_backend_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler, monkeypatch)

    with pytest.raises(BackendError) as excinfo:
        await client.create_completion({"model": "m", "messages": []})
    assert excinfo.value.status_code == 502
