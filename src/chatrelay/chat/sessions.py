"""Process-wide registry of chat sessions keyed by id, workspace and credential."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from .engine import ChatEngine
from .scheduler import ToolScheduler

logger = logging.getLogger(__name__)

SESSION_KEY_SEPARATOR = ":"


def _digest(value: str, length: int = 12) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def workspace_signature(workdir: Path, model: str, approval_mode: str) -> str:
    return _digest(f"{workdir.resolve()}|{model}|{approval_mode}")


def credential_fingerprint(api_key: str | None) -> str | None:
    if not api_key:
        return None
    return _digest(api_key)


def compose_session_key(
    session_id: str,
    workdir: Path,
    model: str,
    approval_mode: str,
    api_key: str | None = None,
) -> str:
    parts = [session_id, workspace_signature(workdir, model, approval_mode)]
    fingerprint = credential_fingerprint(api_key)
    if fingerprint is not None:
        parts.append(fingerprint)
    return SESSION_KEY_SEPARATOR.join(parts)


@dataclass
class Session:
    key: str
    session_id: str
    workdir: Path
    engine: ChatEngine
    scheduler: ToolScheduler
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    created_at: float = field(default_factory=time.time)
    last_active_at: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_active_at = time.time()


SessionFactory = Callable[[str], Awaitable[Session]]


class SessionRegistry:
    """Get-or-create and prefix eviction of sessions under a single lock."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, key: str, factory: SessionFactory) -> Session:
        async with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = await factory(key)
                self._sessions[key] = session
                logger.info("Created session %s", key)
            session.touch()
            return session

    async def evict_prefix(self, session_id: str) -> list[str]:
        """Remove the session id and every key extending it with the separator."""

        prefix = f"{session_id}{SESSION_KEY_SEPARATOR}"
        async with self._lock:
            removed = [
                key
                for key in self._sessions
                if key == session_id or key.startswith(prefix)
            ]
            for key in removed:
                del self._sessions[key]
        if removed:
            logger.info("Removed %s session(s) for %s", len(removed), session_id)
        return removed

    def get(self, key: str) -> Session | None:
        return self._sessions.get(key)

    def keys(self) -> list[str]:
        return sorted(self._sessions)

    async def clear(self) -> None:
        async with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = [
    "SESSION_KEY_SEPARATOR",
    "Session",
    "SessionFactory",
    "SessionRegistry",
    "compose_session_key",
    "credential_fingerprint",
    "workspace_signature",
]
