"""
Tool Executor — runs in-process tool handlers.

In-process tools (workspace memory, session state, file read/write inside
the workspace) are plain Python callables. The executor validates their
input against the registered schema, applies the per-tool timeout, runs
sync handlers on a bounded worker thread, truncates long output, and turns
every outcome into a terminal ToolResult. Nothing raised by a handler
escapes; the model reads the failure instead.

Command tools never come through here; the broker sends them to the host
runner or the sandbox.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from vigil.errors import WorkspaceAccessError
from vigil.tools.registry import ToolRegistry
from vigil.types import ToolCall, ToolResult, ToolStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ToolContext:
    """Who is calling: handed to context-aware handlers."""
    session_key: str
    run_id: str = ""
    agent_id: str = ""


def _safe_release(sem: asyncio.BoundedSemaphore) -> None:
    try:
        sem.release()
    except ValueError:
        pass  # Already released by timeout handler


# JSON Schema type → Python types (for lightweight validation)
_JSON_TYPE_MAP: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def validate_tool_input(
    schema: dict[str, Any],
    tool_input: dict[str, Any],
) -> Optional[str]:
    """
    Lightweight JSON Schema validation for tool inputs.

    Checks required fields and basic type constraints. Returns an error
    message string on failure, or None if the input is valid.
    """
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    missing = [name for name in required if name not in tool_input]
    if missing:
        return f"Missing required parameter(s): {', '.join(missing)}"

    for name, value in tool_input.items():
        prop_schema = properties.get(name)
        if not prop_schema or not isinstance(prop_schema, dict):
            if schema.get("additionalProperties") is False:
                return f"Unexpected parameter '{name}'"
            continue
        expected_type = prop_schema.get("type")
        py_types = _JSON_TYPE_MAP.get(expected_type) if expected_type else None
        if py_types is None:
            continue
        # bool is a subclass of int, but JSON booleans are distinct
        if isinstance(value, bool) and expected_type in ("integer", "number"):
            return f"Parameter '{name}' expected {expected_type}, got boolean"
        if not isinstance(value, py_types):
            return f"Parameter '{name}' expected {expected_type}, got {type(value).__name__}"
        enum = prop_schema.get("enum")
        if enum and value not in enum:
            return f"Parameter '{name}' must be one of {enum}"

    return None


def truncate_output(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    keep = max(0, limit - 100)
    return (
        text[:keep]
        + f"\n\n[Output truncated: {len(text)} chars total, showing first {keep}]"
    )


class ToolExecutor:
    """Executes in-process tools with validation, timeouts and observability."""

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: float = 60.0,
        max_output_length: int = 25000,
        max_concurrent_sync: int = 8,
    ):
        self._registry = registry
        self._default_timeout = default_timeout
        self._max_output_length = max_output_length
        self._sync_slot = asyncio.BoundedSemaphore(max(1, int(max_concurrent_sync)))

        self._total_executions = 0
        self._total_successes = 0
        self._total_failures = 0

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        start_time = time.monotonic()
        self._total_executions += 1

        tool_def = self._registry.get(call.name)
        if tool_def is None or not tool_def.enabled:
            return self._failure(call, f"Unknown or disabled tool: {call.name}", start_time)
        if tool_def.handler is None:
            return self._failure(call, f"No handler registered for tool: {call.name}", start_time)

        validation_error = validate_tool_input(tool_def.input_schema, call.arguments)
        if validation_error:
            return self._failure(call, validation_error, start_time)

        kwargs = dict(call.arguments)
        if tool_def.takes_context:
            kwargs["context"] = context

        timeout = tool_def.timeout if tool_def.timeout is not None else self._default_timeout
        handler = tool_def.handler
        try:
            if asyncio.iscoroutinefunction(handler):
                result = await asyncio.wait_for(handler(**kwargs), timeout=timeout)
            else:
                result = await self._execute_sync_handler(handler, kwargs, timeout)
        except asyncio.TimeoutError:
            self._total_failures += 1
            logger.warning("tool_executor.timeout", tool_name=call.name, timeout=timeout)
            return ToolResult(
                call_id=call.call_id,
                name=call.name,
                status=ToolStatus.TIMED_OUT,
                error=f"Tool execution timed out after {timeout}s",
                elapsed_seconds=time.monotonic() - start_time,
            )
        except WorkspaceAccessError as e:
            self._total_failures += 1
            return ToolResult(
                call_id=call.call_id,
                name=call.name,
                status=ToolStatus.DENIED,
                error=str(e),
                elapsed_seconds=time.monotonic() - start_time,
            )
        except Exception as e:
            logger.error(
                "tool_executor.error",
                tool_name=call.name,
                error=f"{type(e).__name__}: {e}",
                exc_info=True,
            )
            return self._failure(call, f"{type(e).__name__}: {e}", start_time)

        output = truncate_output(str(result) if result is not None else "", self._max_output_length)
        elapsed = time.monotonic() - start_time
        self._total_successes += 1
        logger.info(
            "tool_executor.success",
            tool_name=call.name,
            elapsed=round(elapsed, 3),
            result_length=len(output),
        )
        return ToolResult(
            call_id=call.call_id,
            name=call.name,
            status=ToolStatus.SUCCEEDED,
            output=output,
            elapsed_seconds=elapsed,
        )

    def _failure(self, call: ToolCall, error: str, start_time: float) -> ToolResult:
        self._total_failures += 1
        return ToolResult(
            call_id=call.call_id,
            name=call.name,
            status=ToolStatus.FAILED,
            error=error,
            elapsed_seconds=time.monotonic() - start_time,
        )

    async def _execute_sync_handler(
        self,
        handler: Callable[..., Any],
        tool_input: dict[str, Any],
        timeout: float,
    ) -> Any:
        """Run a synchronous handler on a dedicated daemon thread."""
        try:
            await asyncio.wait_for(self._sync_slot.acquire(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RuntimeError("Sync tool executor is saturated with long-running tasks.") from exc

        loop = asyncio.get_running_loop()
        done = asyncio.Event()
        result_box: dict[str, Any] = {}
        released = threading.Event()

        def _invoke() -> None:
            try:
                result_box["result"] = handler(**tool_input)
            except Exception as exc:
                result_box["error"] = exc
            finally:
                if not released.is_set():
                    released.set()
                    try:
                        loop.call_soon_threadsafe(_safe_release, self._sync_slot)
                    except RuntimeError:
                        # Loop already closed during shutdown.
                        _safe_release(self._sync_slot)
                try:
                    loop.call_soon_threadsafe(done.set)
                except RuntimeError:
                    pass

        try:
            threading.Thread(target=_invoke, daemon=True).start()
        except Exception:
            self._sync_slot.release()
            raise

        try:
            await asyncio.wait_for(done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            # The stuck thread may never release its slot.
            if not released.is_set():
                released.set()
                _safe_release(self._sync_slot)
            raise

        if "error" in result_box:
            raise result_box["error"]
        return result_box.get("result")

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_executions": self._total_executions,
            "successes": self._total_successes,
            "failures": self._total_failures,
        }
