"""HTTP client for chat-completions compatible backends."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Iterable, Optional

import httpx
from fastapi import status

from .chat.errors import AuthorizationError
from .config import Settings

logger = logging.getLogger(__name__)

_AUTH_STATUS_CODES = {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}


class BackendError(Exception):
    """Wrap transport or API failures when communicating with the backend."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None


class CompletionsClient:
    """Client for ``/chat/completions`` with a shared connection pool."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(self, settings: Settings, *, api_key: str | None = None):
        self._settings = settings
        self._api_key = api_key

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def _resolved_api_key(self) -> str:
        if self._api_key:
            return self._api_key
        configured = self._settings.backend_api_key
        if configured is not None and configured.get_secret_value():
            return configured.get_secret_value()
        raise AuthorizationError(
            "Authentication error - no API key configured for the backend"
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._resolved_api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    @property
    def _base_url(self) -> str:
        """Return the backend API base URL without a trailing slash."""

        return str(self._settings.backend_base_url).rstrip("/")

    def _raise_for_status(self, status_code: int, raw: bytes) -> None:
        detail = self._extract_error_detail(raw)
        if status_code in _AUTH_STATUS_CODES:
            raise AuthorizationError(
                "Authentication error - please check your API key", detail=detail
            )
        raise BackendError(status_code, detail)

    async def stream_chat(
        self,
        payload: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Stream decoded completion chunks for a prebuilt payload."""

        url = f"{self._base_url}/chat/completions"
        request_headers = dict(self._headers)
        if headers:
            request_headers.update(headers)
        body = dict(payload)
        body["stream"] = True

        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST",
                url,
                headers=request_headers,
                json=body,
            ) as response:
                if response.status_code >= 400:
                    raw = await response.aread()
                    self._raise_for_status(response.status_code, raw)

                async for event in self._iter_events(response):
                    if not event.data:
                        continue
                    if event.data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(event.data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping non-JSON SSE payload: %s", event.data)
                        continue
                    if isinstance(chunk, dict) and "error" in chunk:
                        raise BackendError(status.HTTP_502_BAD_GATEWAY, chunk["error"])
                    yield chunk
        except httpx.HTTPError as exc:
            raise BackendError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    async def create_completion(
        self,
        payload: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Return a complete, non-streamed ``chat.completion`` object."""

        url = f"{self._base_url}/chat/completions"
        request_headers = dict(self._headers)
        request_headers["Accept"] = "application/json"
        if headers:
            request_headers.update(headers)
        body = dict(payload)
        body["stream"] = False

        client = await self._get_http_client()
        try:
            response = await client.post(url, headers=request_headers, json=body)
        except httpx.HTTPError as exc:
            raise BackendError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            self._raise_for_status(response.status_code, response.content)

        try:
            return response.json()
        except ValueError as exc:  # pragma: no cover - unexpected payload
            raise BackendError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close pooled HTTP client", exc_info=True)

    async def _iter_events(
        self, response: httpx.Response
    ) -> AsyncGenerator[ServerSentEvent, None]:
        buffer: list[str] = []
        async for line in response.aiter_lines():
            if not line:
                if buffer:
                    yield self._parse_event(buffer)
                    buffer.clear()
                continue
            if line.startswith(":"):
                continue
            buffer.append(line)
        if buffer:
            yield self._parse_event(buffer)

    def _parse_event(self, lines: Iterable[str]) -> ServerSentEvent:
        event_name: Optional[str] = None
        event_id: Optional[str] = None
        data_lines: list[str] = []

        for line in lines:
            field, _, value = line.partition(":")
            value = value.lstrip(" ")
            if field == "event":
                event_name = value or None
            elif field == "data":
                data_lines.append(value)
            elif field == "id":
                event_id = value or None

        data = "\n".join(data_lines)
        return ServerSentEvent(
            data=data, event=event_name or "message", event_id=event_id
        )

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Backend returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = ["BackendError", "CompletionsClient", "ServerSentEvent"]
