"""Tests for the tool scheduler and the built-in tools."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, ClassVar

import pytest
from pydantic import BaseModel

from chatrelay.chat.cancellation import AbortSignal
from chatrelay.chat.errors import ToolExecutionError
from chatrelay.chat.events import CompletedToolCall, ToolCallRequest
from chatrelay.chat.scheduler import ToolScheduler, ToolSchedulerBusyError
from chatrelay.chat.tools import (
    BaseTool,
    ToolContext,
    ToolRegistry,
    ToolResult,
    default_tool_registry,
    resolve_workspace_path,
)

pytestmark = pytest.mark.anyio


class SleepParams(BaseModel):
    seconds: float = 0.0


class SleepTool(BaseTool):
    name: ClassVar[str] = "sleep"
    description: ClassVar[str] = "Sleep for a while."
    params_model: ClassVar[type[BaseModel]] = SleepParams

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def execute(self, params: SleepParams, context: ToolContext) -> ToolResult:
        self.started.set()
        await asyncio.sleep(params.seconds)
        return ToolResult(llm_content=f"slept {params.seconds}")


class ExplodingTool(BaseTool):
    name: ClassVar[str] = "explode"
    description: ClassVar[str] = "Always fails."
    params_model: ClassVar[type[BaseModel]] = SleepParams

    async def execute(self, params: Any, context: ToolContext) -> ToolResult:
        raise RuntimeError("kaboom")


def _request(name: str, call_id: str, **args: Any) -> ToolCallRequest:
    return ToolCallRequest(call_id=call_id, name=name, args=args)


def _make_scheduler(
    tmp_path: Path,
    *tools: BaseTool,
    approval_mode: str = "yolo",
    callback: Any = None,
) -> ToolScheduler:
    registry = default_tool_registry()
    for tool in tools:
        registry.register(tool)
    return ToolScheduler(
        registry,
        workdir=tmp_path,
        approval_mode=approval_mode,  # type: ignore[arg-type]
        on_all_tool_calls_complete=callback,
    )


def _error(call: CompletedToolCall) -> str | None:
    assert call.response_parts is not None
    response = call.response_parts[0].function_response
    assert response is not None
    return response.error


async def test_batch_reports_through_callback_and_future(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("alpha", encoding="utf-8")
    reported: list[list[CompletedToolCall]] = []
    scheduler = _make_scheduler(tmp_path, callback=reported.append)

    completed = await scheduler.schedule(
        [_request("read_file", "c1", path="a.txt"), _request("list_directory", "c2")],
        AbortSignal(),
    )

    assert reported == [completed]
    assert [call.status for call in completed] == ["success", "success"]
    first = completed[0].response_parts[0].function_response  # type: ignore[index]
    assert first.id == "c1"
    assert first.name == "read_file"
    assert first.response == {"output": "alpha"}
    assert scheduler.is_running is False


async def test_each_batch_gets_a_fresh_future(tmp_path: Path) -> None:
    scheduler = _make_scheduler(tmp_path)

    first = scheduler.schedule([_request("list_directory", "c1")], AbortSignal())
    await first
    second = scheduler.schedule([_request("list_directory", "c2")], AbortSignal())
    await second

    assert first is not second
    assert first.result()[0].request.call_id == "c1"
    assert second.result()[0].request.call_id == "c2"


async def test_scheduling_while_busy_is_rejected(tmp_path: Path) -> None:
    sleeper = SleepTool()
    scheduler = _make_scheduler(tmp_path, sleeper)

    pending = scheduler.schedule([_request("sleep", "c1", seconds=0.2)], AbortSignal())
    with pytest.raises(ToolSchedulerBusyError):
        scheduler.schedule([_request("sleep", "c2")], AbortSignal())
    await pending


async def test_calls_in_a_batch_run_concurrently(tmp_path: Path) -> None:
    scheduler = _make_scheduler(tmp_path, SleepTool())
    loop = asyncio.get_running_loop()

    started = loop.time()
    completed = await scheduler.schedule(
        [_request("sleep", f"c{i}", seconds=0.3) for i in range(3)], AbortSignal()
    )

    assert loop.time() - started < 0.8
    assert all(call.status == "success" for call in completed)


async def test_failures_become_error_results(tmp_path: Path) -> None:
    scheduler = _make_scheduler(tmp_path, ExplodingTool())

    completed = await scheduler.schedule(
        [
            _request("does_not_exist", "c1"),
            _request("read_file", "c2"),
            _request("read_file", "c3", path="missing.txt"),
            _request("explode", "c4"),
        ],
        AbortSignal(),
    )

    assert [call.status for call in completed] == ["error"] * 4
    assert "not found in registry" in (_error(completed[0]) or "")
    assert "Invalid arguments" in (_error(completed[1]) or "")
    assert "File not found" in (_error(completed[2]) or "")
    assert "kaboom" in (_error(completed[3]) or "")


async def test_default_approval_mode_refuses_confirmation_tools(tmp_path: Path) -> None:
    scheduler = _make_scheduler(tmp_path, approval_mode="default")

    completed = await scheduler.schedule(
        [_request("write_file", "c1", path="out.txt", content="data")], AbortSignal()
    )

    assert completed[0].status == "error"
    assert "requires confirmation" in (_error(completed[0]) or "")
    assert not (tmp_path / "out.txt").exists()


async def test_abort_cancels_running_calls(tmp_path: Path) -> None:
    sleeper = SleepTool()
    scheduler = _make_scheduler(tmp_path, sleeper)
    signal = AbortSignal()

    pending = scheduler.schedule([_request("sleep", "c1", seconds=30)], signal)
    await sleeper.started.wait()
    signal.abort("stop")
    completed = await asyncio.wait_for(pending, timeout=5)

    assert completed[0].status == "cancelled"
    assert completed[0].response_parts is not None


async def test_write_file_and_shell_command_in_yolo_mode(tmp_path: Path) -> None:
    scheduler = _make_scheduler(tmp_path)
    command = f'"{sys.executable}" -c "print(open(\'out.txt\').read())"'

    completed = await scheduler.schedule(
        [_request("write_file", "c1", path="nested/out.txt", content="hello")],
        AbortSignal(),
    )
    assert completed[0].status == "success"
    assert (tmp_path / "nested" / "out.txt").read_text(encoding="utf-8") == "hello"

    (tmp_path / "out.txt").write_text("from disk", encoding="utf-8")
    completed = await scheduler.schedule(
        [_request("run_shell_command", "c2", command=command)], AbortSignal()
    )
    output = completed[0].response_parts[0].function_response.output  # type: ignore[index,union-attr]
    payload = json.loads(output)
    assert payload["exit_code"] == 0
    assert payload["stdout"].strip() == "from disk"


def test_resolve_workspace_path_rejects_escapes(tmp_path: Path) -> None:
    assert resolve_workspace_path(tmp_path, "a/b.txt") == (tmp_path / "a" / "b.txt").resolve()
    with pytest.raises(ToolExecutionError):
        resolve_workspace_path(tmp_path, "../outside.txt")
    with pytest.raises(ToolExecutionError):
        resolve_workspace_path(tmp_path, "/etc/passwd")


def test_registry_exposes_sorted_declarations() -> None:
    registry = default_tool_registry()

    names = [declaration.name for declaration in registry.declarations()]

    assert names == ["list_directory", "read_file", "run_shell_command", "write_file"]
    read_file = registry.get("read_file")
    assert read_file is not None
    schema = read_file.declaration().parameters
    assert schema is not None
    assert schema["required"] == ["path"]
    with pytest.raises(ValueError):
        registry.register(read_file)


def test_empty_registry() -> None:
    assert ToolRegistry().names() == []
