"""Built-in tools the model can call, plus the registry that exposes them."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar, Iterable, Optional

from pydantic import BaseModel, Field, ValidationError

from .cancellation import AbortSignal
from .content import FunctionDeclaration
from .errors import ToolExecutionError

logger = logging.getLogger(__name__)

_MAX_READ_BYTES = 2 * 1024 * 1024
_MAX_OUTPUT_CHARS = 64_000


def resolve_workspace_path(workdir: Path, raw_path: str) -> Path:
    """Resolve ``raw_path`` against ``workdir`` and refuse paths that escape it."""

    base = workdir.resolve()
    candidate = Path(raw_path).expanduser()
    resolved = (candidate if candidate.is_absolute() else base / candidate).resolve()
    if not resolved.is_relative_to(base):
        raise ToolExecutionError(f"Path {raw_path} is outside the workspace {base}")
    return resolved


def _truncate(text: str) -> str:
    if len(text) <= _MAX_OUTPUT_CHARS:
        return text
    omitted = len(text) - _MAX_OUTPUT_CHARS
    return f"{text[:_MAX_OUTPUT_CHARS]}\n... [truncated {omitted} characters]"


@dataclass
class ToolContext:
    workdir: Path
    signal: AbortSignal
    shell_timeout_seconds: int = 30


@dataclass
class ToolResult:
    llm_content: str
    is_error: bool = False


class BaseTool:
    name: ClassVar[str]
    description: ClassVar[str]
    params_model: ClassVar[type[BaseModel]]
    requires_confirmation: ClassVar[bool] = False

    def declaration(self) -> FunctionDeclaration:
        schema = self.params_model.model_json_schema()
        schema.pop("title", None)
        return FunctionDeclaration(
            name=self.name, description=self.description, parameters=schema
        )

    def validate_args(self, args: dict[str, Any]) -> BaseModel:
        try:
            return self.params_model.model_validate(args)
        except ValidationError as exc:
            raise ToolExecutionError(
                f"Invalid arguments for tool {self.name}: {exc.errors(include_url=False)}"
            ) from exc

    async def execute(self, params: Any, context: ToolContext) -> ToolResult:
        raise NotImplementedError


class ReadFileParams(BaseModel):
    path: str = Field(description="File path, relative to the workspace root.")
    offset: Optional[int] = Field(
        default=None, ge=0, description="Zero-based line to start reading from."
    )
    limit: Optional[int] = Field(
        default=None, ge=1, description="Maximum number of lines to return."
    )


class ReadFileTool(BaseTool):
    name = "read_file"
    description = "Read a UTF-8 text file from the workspace."
    params_model = ReadFileParams

    async def execute(self, params: ReadFileParams, context: ToolContext) -> ToolResult:
        path = resolve_workspace_path(context.workdir, params.path)
        if not path.is_file():
            raise ToolExecutionError(f"File not found: {params.path}")
        if path.stat().st_size > _MAX_READ_BYTES:
            raise ToolExecutionError(
                f"File {params.path} exceeds {_MAX_READ_BYTES} bytes"
            )
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise ToolExecutionError(f"File {params.path} is not UTF-8 text") from exc

        if params.offset is not None or params.limit is not None:
            lines = text.splitlines(keepends=True)
            start = params.offset or 0
            end = start + params.limit if params.limit is not None else None
            text = "".join(lines[start:end])
        return ToolResult(llm_content=_truncate(text))


class ListDirectoryParams(BaseModel):
    path: str = Field(default=".", description="Directory, relative to the workspace.")


class ListDirectoryTool(BaseTool):
    name = "list_directory"
    description = "List the entries of a workspace directory."
    params_model = ListDirectoryParams

    async def execute(
        self, params: ListDirectoryParams, context: ToolContext
    ) -> ToolResult:
        path = resolve_workspace_path(context.workdir, params.path)
        if not path.is_dir():
            raise ToolExecutionError(f"Directory not found: {params.path}")

        def _list() -> list[str]:
            entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name))
            return [f"{p.name}/" if p.is_dir() else p.name for p in entries]

        names = await asyncio.to_thread(_list)
        if not names:
            return ToolResult(llm_content=f"Directory {params.path} is empty.")
        return ToolResult(llm_content="\n".join(names))


class WriteFileParams(BaseModel):
    path: str = Field(description="File path, relative to the workspace root.")
    content: str = Field(description="Full text content to write.")


class WriteFileTool(BaseTool):
    name = "write_file"
    description = "Create or overwrite a UTF-8 text file in the workspace."
    params_model = WriteFileParams
    requires_confirmation = True

    async def execute(self, params: WriteFileParams, context: ToolContext) -> ToolResult:
        path = resolve_workspace_path(context.workdir, params.path)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(params.content, encoding="utf-8")

        await asyncio.to_thread(_write)
        return ToolResult(
            llm_content=f"Wrote {len(params.content)} characters to {params.path}."
        )


class ShellCommandParams(BaseModel):
    command: str = Field(description="Shell command to execute.")
    timeout_seconds: Optional[int] = Field(
        default=None, ge=1, le=600, description="Override the default timeout."
    )


class ShellCommandTool(BaseTool):
    name = "run_shell_command"
    description = "Run a shell command in the workspace and capture its output."
    params_model = ShellCommandParams
    requires_confirmation = True

    async def execute(
        self, params: ShellCommandParams, context: ToolContext
    ) -> ToolResult:
        timeout_seconds = params.timeout_seconds or context.shell_timeout_seconds
        start = time.perf_counter()
        process = await asyncio.create_subprocess_shell(
            params.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(context.workdir),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(),
                timeout=float(timeout_seconds),
            )
            exit_code = process.returncode if process.returncode is not None else -1
        except asyncio.TimeoutError:
            process.kill()
            stdout_bytes, stderr_bytes = await process.communicate()
            exit_code = -1
            if not stderr_bytes:
                stderr_bytes = (
                    f"Process timed out after {timeout_seconds} seconds".encode()
                )
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        payload = {
            "command": params.command,
            "stdout": _truncate(stdout_bytes.decode("utf-8", errors="replace")),
            "stderr": _truncate(stderr_bytes.decode("utf-8", errors="replace")),
            "exit_code": exit_code,
            "duration_ms": round(duration_ms, 1),
        }
        return ToolResult(llm_content=json.dumps(payload))


class ToolRegistry:
    """Name-indexed collection of tools available to a session."""

    def __init__(self, tools: Iterable[BaseTool] = ()) -> None:
        self._tools: dict[str, BaseTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool {tool.name} is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def declarations(self) -> list[FunctionDeclaration]:
        return [self._tools[name].declaration() for name in self.names()]


def default_tool_registry() -> ToolRegistry:
    return ToolRegistry(
        [ReadFileTool(), ListDirectoryTool(), WriteFileTool(), ShellCommandTool()]
    )


__all__ = [
    "BaseTool",
    "ListDirectoryTool",
    "ReadFileTool",
    "ShellCommandTool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "WriteFileTool",
    "default_tool_registry",
    "resolve_workspace_path",
]
