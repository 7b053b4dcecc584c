"""Normalize raw user messages into queries, expanding ``@path`` references."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .cancellation import AbortSignal
from .content import Part, PartListUnion
from .errors import ToolExecutionError
from .tools import resolve_workspace_path

logger = logging.getLogger(__name__)

AT_PATH_PATTERN = re.compile(r"@([^\s\\]+(?:\\\s[^\s\\]+)*)")
CONTENT_START_BANNER = "\n--- Content from referenced file ---\n"
CONTENT_END_BANNER = "\n--- End of content ---\n"


@dataclass
class PreparedQuery:
    query_to_send: PartListUnion | None
    should_proceed: bool


@dataclass
class AtCommandResult:
    processed_query: list[Part]
    should_proceed: bool


def unescape_path(raw: str) -> str:
    return re.sub(r"\\(\s)", r"\1", raw)


def _error_banner(path: str) -> str:
    return f"\n--- Error reading file {path} ---\n"


async def _read_referenced_file(
    workdir: Path, raw_path: str, signal: AbortSignal
) -> str:
    path = resolve_workspace_path(workdir, raw_path)
    return await signal.race(asyncio.to_thread(path.read_text, encoding="utf-8"))


async def handle_at_command(
    query: str, workdir: Path, signal: AbortSignal
) -> AtCommandResult:
    """Splice the content of every ``@path`` token into the query.

    Each token is kept in place and followed by the file content wrapped in
    start/end banners. A file that cannot be read is followed by an error
    banner instead and the whole query is marked as not proceeding.
    """

    parts: list[Part] = []
    should_proceed = True
    cursor = 0

    for match in AT_PATH_PATTERN.finditer(query):
        if match.start() > cursor:
            parts.append(Part.from_text(query[cursor : match.start()]))
        cursor = match.end()

        parts.append(Part.from_text(match.group(0)))
        path = unescape_path(match.group(1))
        try:
            content = await _read_referenced_file(workdir, path, signal)
        except (OSError, UnicodeDecodeError, ToolExecutionError) as exc:
            logger.warning("Failed to read referenced file %s: %s", path, exc)
            parts.append(Part.from_text(_error_banner(path)))
            should_proceed = False
            continue

        parts.extend(
            [
                Part.from_text(CONTENT_START_BANNER),
                Part.from_text(content),
                Part.from_text(CONTENT_END_BANNER),
            ]
        )

    if cursor < len(query):
        parts.append(Part.from_text(query[cursor:]))

    return AtCommandResult(processed_query=parts, should_proceed=should_proceed)


async def prepare_query(
    raw_query: Any, workdir: Path, signal: AbortSignal
) -> PreparedQuery:
    if raw_query is None:
        return PreparedQuery(query_to_send=None, should_proceed=False)

    if not isinstance(raw_query, str):
        return PreparedQuery(query_to_send=raw_query, should_proceed=True)

    trimmed = raw_query.strip()
    if not trimmed:
        return PreparedQuery(query_to_send=None, should_proceed=False)

    if trimmed.startswith("@"):
        result = await handle_at_command(trimmed, workdir, signal)
        if not result.should_proceed:
            return PreparedQuery(query_to_send=None, should_proceed=False)
        return PreparedQuery(query_to_send=result.processed_query, should_proceed=True)

    return PreparedQuery(query_to_send=trimmed, should_proceed=True)


__all__ = [
    "AT_PATH_PATTERN",
    "AtCommandResult",
    "CONTENT_END_BANNER",
    "CONTENT_START_BANNER",
    "PreparedQuery",
    "handle_at_command",
    "prepare_query",
    "unescape_path",
]
