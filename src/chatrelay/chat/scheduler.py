"""Execute one batch of tool-call requests and report the completed calls."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterable, Literal

from .cancellation import AbortSignal
from .content import FunctionResponse, Part
from .errors import ToolExecutionError, TurnCancelledError
from .events import CompletedToolCall, ToolCallRequest, ToolCallResponse
from .tools import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[list[CompletedToolCall]], None]
ApprovalMode = Literal["default", "yolo"]

_CANCELLED_MESSAGE = "[Operation Cancelled] Reason: tool execution was cancelled."


class ToolSchedulerBusyError(RuntimeError):
    """A batch was scheduled while the previous one was still running."""


def _error_response(request: ToolCallRequest, message: str) -> ToolCallResponse:
    part = Part(
        function_response=FunctionResponse(
            id=request.call_id, name=request.name, response={"error": message}
        )
    )
    return ToolCallResponse(call_id=request.call_id, response_parts=[part], error=message)


def _success_response(request: ToolCallRequest, output: str) -> ToolCallResponse:
    part = Part(
        function_response=FunctionResponse(
            id=request.call_id, name=request.name, response={"output": output}
        )
    )
    return ToolCallResponse(call_id=request.call_id, response_parts=[part])


class ToolScheduler:
    """Validate, confirm and run tool calls one batch at a time.

    ``schedule`` hands back a fresh one-shot future per batch. When the batch
    settles the registered ``on_all_tool_calls_complete`` callback is invoked
    and the future is resolved exactly once with the same list.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        workdir: Path,
        approval_mode: ApprovalMode = "default",
        shell_timeout_seconds: int = 30,
        on_all_tool_calls_complete: CompletionCallback | None = None,
    ) -> None:
        self._registry = registry
        self._workdir = workdir
        self._approval_mode = approval_mode
        self._shell_timeout_seconds = shell_timeout_seconds
        self._on_all_tool_calls_complete = on_all_tool_calls_complete
        self._active: asyncio.Future[list[CompletedToolCall]] | None = None
        self._batch_task: asyncio.Task[None] | None = None

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        return self._active is not None and not self._active.done()

    def schedule(
        self,
        requests: Iterable[ToolCallRequest],
        signal: AbortSignal,
    ) -> asyncio.Future[list[CompletedToolCall]]:
        if self.is_running:
            raise ToolSchedulerBusyError(
                "Cannot schedule tool calls while another batch is running"
            )
        batch = list(requests)
        completion: asyncio.Future[list[CompletedToolCall]] = (
            asyncio.get_running_loop().create_future()
        )
        self._active = completion
        self._batch_task = asyncio.create_task(
            self._run_batch(batch, signal, completion)
        )
        return completion

    async def _run_batch(
        self,
        batch: list[ToolCallRequest],
        signal: AbortSignal,
        completion: asyncio.Future[list[CompletedToolCall]],
    ) -> None:
        try:
            completed = list(
                await asyncio.gather(
                    *(self._execute(request, signal) for request in batch)
                )
            )
        except asyncio.CancelledError:
            if not completion.done():
                completion.cancel()
            raise

        if self._on_all_tool_calls_complete is not None:
            try:
                self._on_all_tool_calls_complete(completed)
            except Exception:
                logger.exception("Tool completion callback failed")
        if not completion.done():
            completion.set_result(completed)

    async def _execute(
        self, request: ToolCallRequest, signal: AbortSignal
    ) -> CompletedToolCall:
        tool = self._registry.get(request.name)
        if tool is None:
            message = f'Tool "{request.name}" not found in registry.'
            logger.warning(message)
            return CompletedToolCall(
                status="error", request=request, response=_error_response(request, message)
            )

        if signal.aborted:
            return CompletedToolCall(
                status="cancelled",
                request=request,
                response=_error_response(request, _CANCELLED_MESSAGE),
            )

        try:
            params = tool.validate_args(request.args)
            if tool.requires_confirmation and self._approval_mode != "yolo":
                raise ToolExecutionError(
                    f"Tool {tool.name} requires confirmation and cannot run "
                    f"in approval mode '{self._approval_mode}'."
                )
            context = ToolContext(
                workdir=self._workdir,
                signal=signal,
                shell_timeout_seconds=self._shell_timeout_seconds,
            )
            logger.info("Executing tool %s (%s)", tool.name, request.call_id)
            result = await signal.race(tool.execute(params, context))
        except TurnCancelledError:
            return CompletedToolCall(
                status="cancelled",
                request=request,
                response=_error_response(request, _CANCELLED_MESSAGE),
            )
        except ToolExecutionError as exc:
            logger.info("Tool %s failed: %s", request.name, exc.message)
            return CompletedToolCall(
                status="error",
                request=request,
                response=_error_response(request, exc.message),
            )
        except Exception as exc:
            logger.exception("Tool '%s' raised an exception", request.name)
            return CompletedToolCall(
                status="error",
                request=request,
                response=_error_response(
                    request, f"Error executing tool {request.name}: {exc}"
                ),
            )

        if result.is_error:
            return CompletedToolCall(
                status="error",
                request=request,
                response=_error_response(request, result.llm_content),
            )
        return CompletedToolCall(
            status="success",
            request=request,
            response=_success_response(request, result.llm_content),
        )


__all__ = ["ApprovalMode", "CompletionCallback", "ToolScheduler", "ToolSchedulerBusyError"]
