"""Tests for session key composition and the session registry."""

from __future__ import annotations

from pathlib import Path

import pytest

from chatrelay.chat.sessions import (
    SESSION_KEY_SEPARATOR,
    Session,
    SessionRegistry,
    compose_session_key,
    credential_fingerprint,
)


def _factory(created: list[str]):
    async def factory(key: str) -> Session:
        created.append(key)
        return Session(
            key=key,
            session_id=key.split(SESSION_KEY_SEPARATOR)[0],
            workdir=Path("."),
            engine=object(),  # type: ignore[arg-type]
            scheduler=object(),  # type: ignore[arg-type]
        )

    return factory


def test_key_starts_with_session_id_and_varies_with_workspace(tmp_path: Path) -> None:
    other = tmp_path / "other"
    other.mkdir()

    base = compose_session_key("s1", tmp_path, "m", "default")
    assert base.startswith("s1:")
    assert compose_session_key("s1", tmp_path, "m", "default") == base
    assert compose_session_key("s1", other, "m", "default") != base
    assert compose_session_key("s1", tmp_path, "other-model", "default") != base
    assert compose_session_key("s1", tmp_path, "m", "yolo") != base


def test_credential_is_fingerprinted_not_embedded(tmp_path: Path) -> None:
    key = compose_session_key("s1", tmp_path, "m", "default", api_key="sk-secret")

    assert "sk-secret" not in key
    assert key.endswith(SESSION_KEY_SEPARATOR + credential_fingerprint("sk-secret"))
    assert credential_fingerprint(None) is None
    assert credential_fingerprint("") is None


@pytest.mark.anyio
async def test_get_or_create_reuses_sessions() -> None:
    registry = SessionRegistry()
    created: list[str] = []

    first = await registry.get_or_create("s1:abc", _factory(created))
    second = await registry.get_or_create("s1:abc", _factory(created))

    assert first is second
    assert created == ["s1:abc"]
    assert len(registry) == 1
    assert registry.get("s1:abc") is first


@pytest.mark.anyio
async def test_evict_prefix_removes_only_matching_session() -> None:
    registry = SessionRegistry()
    created: list[str] = []
    for key in ("s1", "s1:abc", "s1:def:123", "s10:abc", "s2:abc"):
        await registry.get_or_create(key, _factory(created))

    removed = await registry.evict_prefix("s1")

    assert sorted(removed) == ["s1", "s1:abc", "s1:def:123"]
    assert registry.keys() == ["s10:abc", "s2:abc"]
    assert await registry.evict_prefix("missing") == []


@pytest.mark.anyio
async def test_clear_drops_every_session() -> None:
    registry = SessionRegistry()
    await registry.get_or_create("s1:abc", _factory([]))

    await registry.clear()

    assert len(registry) == 0
    assert registry.keys() == []
