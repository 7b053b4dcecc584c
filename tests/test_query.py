"""Tests for query preparation and ``@path`` expansion."""

from __future__ import annotations

from pathlib import Path

import pytest

from chatrelay.chat.cancellation import AbortSignal
from chatrelay.chat.content import Part
from chatrelay.chat.errors import TurnCancelledError
from chatrelay.chat.query import (
    CONTENT_END_BANNER,
    CONTENT_START_BANNER,
    handle_at_command,
    prepare_query,
    unescape_path,
)

pytestmark = pytest.mark.anyio


def _texts(parts: list[Part]) -> list[str | None]:
    return [part.text for part in parts]


async def test_blank_query_does_not_proceed(tmp_path: Path) -> None:
    prepared = await prepare_query("   \n\t", tmp_path, AbortSignal())

    assert prepared.should_proceed is False
    assert prepared.query_to_send is None


async def test_none_query_does_not_proceed(tmp_path: Path) -> None:
    prepared = await prepare_query(None, tmp_path, AbortSignal())

    assert prepared.should_proceed is False


async def test_plain_text_is_trimmed(tmp_path: Path) -> None:
    prepared = await prepare_query("  hello there  ", tmp_path, AbortSignal())

    assert prepared.should_proceed is True
    assert prepared.query_to_send == "hello there"


async def test_structured_query_is_forwarded_unchanged(tmp_path: Path) -> None:
    parts = [Part.from_text("@a.txt is not expanded here")]

    prepared = await prepare_query(parts, tmp_path, AbortSignal())

    assert prepared.should_proceed is True
    assert prepared.query_to_send is parts


async def test_file_reference_is_spliced_in_place(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("alpha", encoding="utf-8")
    (tmp_path / "b.txt").write_text("beta", encoding="utf-8")

    prepared = await prepare_query(
        "@a.txt compare with @b.txt please", tmp_path, AbortSignal()
    )

    assert prepared.should_proceed is True
    assert _texts(prepared.query_to_send) == [  # type: ignore[arg-type]
        "@a.txt",
        CONTENT_START_BANNER,
        "alpha",
        CONTENT_END_BANNER,
        " compare with ",
        "@b.txt",
        CONTENT_START_BANNER,
        "beta",
        CONTENT_END_BANNER,
        " please",
    ]


async def test_escaped_spaces_in_paths(tmp_path: Path) -> None:
    (tmp_path / "my notes.txt").write_text("notes", encoding="utf-8")

    result = await handle_at_command(r"@my\ notes.txt", tmp_path, AbortSignal())

    assert result.should_proceed is True
    assert _texts(result.processed_query) == [
        r"@my\ notes.txt",
        CONTENT_START_BANNER,
        "notes",
        CONTENT_END_BANNER,
    ]


async def test_missing_file_blocks_the_turn(tmp_path: Path) -> None:
    result = await handle_at_command("@missing.txt summarize", tmp_path, AbortSignal())

    assert result.should_proceed is False
    assert _texts(result.processed_query) == [
        "@missing.txt",
        "\n--- Error reading file missing.txt ---\n",
        " summarize",
    ]

    prepared = await prepare_query("@missing.txt", tmp_path, AbortSignal())
    assert prepared.should_proceed is False
    assert prepared.query_to_send is None


async def test_one_failed_reference_fails_the_whole_query(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("alpha", encoding="utf-8")

    result = await handle_at_command("@a.txt and @nope.txt", tmp_path, AbortSignal())

    assert result.should_proceed is False
    assert "alpha" in _texts(result.processed_query)
    assert "\n--- Error reading file nope.txt ---\n" in _texts(result.processed_query)


async def test_paths_outside_workspace_are_errors(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    (tmp_path / "secret.txt").write_text("hidden", encoding="utf-8")

    result = await handle_at_command("@../secret.txt", workspace, AbortSignal())

    assert result.should_proceed is False
    assert "hidden" not in _texts(result.processed_query)


async def test_directories_are_errors(tmp_path: Path) -> None:
    (tmp_path / "folder").mkdir()

    result = await handle_at_command("@folder", tmp_path, AbortSignal())

    assert result.should_proceed is False


async def test_aborted_signal_cancels_reads(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("alpha", encoding="utf-8")
    signal = AbortSignal()
    signal.abort("client went away")

    with pytest.raises(TurnCancelledError):
        await handle_at_command("@a.txt", tmp_path, signal)


def test_unescape_path() -> None:
    assert unescape_path(r"dir\ name/file\ one.txt") == "dir name/file one.txt"
