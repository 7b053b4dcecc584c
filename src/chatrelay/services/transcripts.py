"""Append per-turn transcripts of chat sessions to dated log files."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class TranscriptWriter:
    """Persist turn snapshots as delimited JSON blocks, one file per session."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = base_dir.resolve()

    def path_for(self, session_id: str, created_at: datetime) -> Path:
        created_utc = created_at.astimezone(timezone.utc)
        safe_session_id = _UNSAFE_CHARS.sub("_", session_id)
        return (
            self._base_dir
            / created_utc.strftime("%Y-%m-%d")
            / f"session_{created_utc.strftime('%Y-%m-%d_%H-%M-%S')}_{safe_session_id}.log"
        )

    async def write(
        self,
        *,
        session_id: str,
        session_created_at: float,
        request_snapshot: dict[str, Any],
        history: list[dict[str, Any]],
        outcome: dict[str, Any],
    ) -> Path:
        timestamp = datetime.now(timezone.utc)
        created_at = datetime.fromtimestamp(session_created_at, tz=timezone.utc)
        entry = {
            "type": "turn_snapshot",
            "logged_at": timestamp.isoformat(),
            "session_id": session_id,
            "session_created_at": created_at.isoformat(),
            "history_length": len(history),
            "request": request_snapshot,
            "outcome": outcome,
            "history": history,
        }
        rendered_entry = json.dumps(entry, ensure_ascii=False, indent=2, default=str)

        delimiter = "=" * 80
        header = timestamp.strftime("%Y-%m-%d %H:%M:%S UTC")
        payload = f"{header}\n{delimiter}\n{rendered_entry}\n{delimiter}\n"

        log_path = self.path_for(session_id, created_at)
        await asyncio.to_thread(self._append_entry, log_path, payload)
        return log_path

    def _append_entry(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(content)


__all__ = ["TranscriptWriter"]
