"""
Tool Broker — the single choke point between the model and execution.

``dispatch`` always returns exactly one terminal ToolResult for the call it
was given. Policy refusals become ``denied`` results, executor and runner
failures become ``failed`` or ``timed_out`` results. Only cancellation
propagates, after the in-flight process or container has been killed.

Host execution may be gated on operator approval. The gate is a coroutine
supplied by the gateway; with no gate wired (or no approver connected) the
answer is always no.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Optional

import structlog

from vigil.events import EventBus, ToolExecutedEvent
from vigil.harness.safety import PolicyDecision, ToolPolicy
from vigil.tools.executor import ToolContext, ToolExecutor
from vigil.tools.host import CommandOutcome, HostRunner
from vigil.tools.registry import ToolRegistry
from vigil.tools.sandbox import DockerSandbox, SandboxUnavailableError
from vigil.types import ToolCall, ToolResult, ToolStatus

logger = structlog.get_logger(__name__)

# (session_key, tool_name, arguments, risk_level) -> approved?
ApprovalGate = Callable[[str, str, dict[str, Any], str], Awaitable[bool]]


class ToolBroker:
    """Checks policy, then routes a call in-process, to the host, or to a container."""

    def __init__(
        self,
        registry: ToolRegistry,
        policy: ToolPolicy,
        executor: ToolExecutor,
        host_runner: HostRunner,
        sandbox: DockerSandbox,
        *,
        default_timeout: float = 60.0,
        max_output_length: int = 25000,
        approval_gate: Optional[ApprovalGate] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self._registry = registry
        self._policy = policy
        self._executor = executor
        self._host = host_runner
        self._sandbox = sandbox
        self._default_timeout = default_timeout
        self._max_output_length = max_output_length
        self._approval_gate = approval_gate
        self._event_bus = event_bus

    @property
    def policy(self) -> ToolPolicy:
        return self._policy

    @property
    def sandbox(self) -> DockerSandbox:
        return self._sandbox

    def set_approval_gate(self, gate: Optional[ApprovalGate]) -> None:
        self._approval_gate = gate

    def tool_schemas(self, policy: Optional[ToolPolicy] = None) -> list[dict[str, Any]]:
        active = policy or self._policy
        return self._registry.get_api_tools(names=active.visible_tool_names)

    def describe_tools(self, policy: Optional[ToolPolicy] = None) -> str:
        """One line per offered tool, for the system prompt."""
        lines = []
        for schema in self.tool_schemas(policy):
            description = (schema.get("description") or "").strip().splitlines()
            lines.append(f"- {schema['name']}: {description[0] if description else ''}")
        return "\n".join(lines)

    async def dispatch(
        self,
        call: ToolCall,
        policy: Optional[ToolPolicy] = None,
        *,
        context: ToolContext,
    ) -> ToolResult:
        start = time.monotonic()
        decision = (policy or self._policy).check(call)
        if not decision.allowed:
            result = self._result(call, ToolStatus.DENIED, error=decision.reason, start=start)
        elif decision.target == "inprocess":
            result = await self._executor.execute(call, context)
        else:
            result = await self._run_command(call, decision, context, start)

        logger.info(
            "tool_broker.dispatched",
            session_key=context.session_key,
            tool_name=call.name,
            call_id=call.call_id,
            target=decision.target,
            status=result.status.value,
        )
        if self._event_bus is not None:
            self._event_bus.emit(ToolExecutedEvent(
                session_key=context.session_key,
                call_id=call.call_id,
                tool_name=call.name,
                status=result.status.value,
                elapsed_seconds=result.elapsed_seconds,
            ))
        return result

    async def _run_command(
        self,
        call: ToolCall,
        decision: PolicyDecision,
        context: ToolContext,
        start: float,
    ) -> ToolResult:
        command = call.arguments.get("command")
        if not isinstance(command, str) or not command.strip():
            return self._result(call, ToolStatus.FAILED, error="Missing required parameter(s): command", start=start)

        tool_def = self._registry.get(call.name)
        timeout = self._default_timeout
        if tool_def is not None and tool_def.timeout is not None:
            timeout = tool_def.timeout
        requested = call.arguments.get("timeout")
        if isinstance(requested, (int, float)) and not isinstance(requested, bool) and requested > 0:
            timeout = min(float(requested), timeout)

        if decision.target == "host":
            if decision.requires_approval and not await self._approved(call, decision, context):
                return self._result(
                    call, ToolStatus.DENIED,
                    error="Host execution was not approved by an operator",
                    start=start,
                )
            try:
                outcome = await self._host.run(command, timeout=timeout)
            except OSError as e:
                return self._result(call, ToolStatus.FAILED, error=f"Host execution failed: {e}", start=start)
        elif decision.sandbox is None:
            return self._result(
                call, ToolStatus.FAILED,
                error="Policy chose the sandbox but supplied no sandbox settings",
                start=start,
            )
        else:
            try:
                outcome = await self._sandbox.run(command, decision.sandbox, timeout=timeout)
            except (SandboxUnavailableError, OSError) as e:
                return self._result(call, ToolStatus.FAILED, error=f"Sandbox unavailable: {e}", start=start)

        return self._from_outcome(call, outcome, timeout, start)

    async def _approved(self, call: ToolCall, decision: PolicyDecision, context: ToolContext) -> bool:
        if self._approval_gate is None:
            logger.info("tool_broker.no_approval_gate", tool_name=call.name)
            return False
        return await self._approval_gate(
            context.session_key, call.name, dict(call.arguments), decision.risk_level
        )

    def _from_outcome(
        self, call: ToolCall, outcome: CommandOutcome, timeout: float, start: float
    ) -> ToolResult:
        output = outcome.combined_output()
        if len(output) > self._max_output_length:
            output = output[: self._max_output_length] + "\n[... output truncated]"
        if outcome.timed_out:
            return self._result(
                call, ToolStatus.TIMED_OUT,
                output=output,
                error=f"Command timed out after {timeout}s and was killed",
                start=start,
            )
        if outcome.exit_code != 0:
            return self._result(
                call, ToolStatus.FAILED,
                output=output,
                error=f"exit code {outcome.exit_code}" + (f": {output[-500:]}" if output else ""),
                exit_code=outcome.exit_code,
                start=start,
            )
        return self._result(call, ToolStatus.SUCCEEDED, output=output, exit_code=0, start=start)

    @staticmethod
    def _result(
        call: ToolCall,
        status: ToolStatus,
        *,
        output: str = "",
        error: Optional[str] = None,
        exit_code: Optional[int] = None,
        start: float,
    ) -> ToolResult:
        return ToolResult(
            call_id=call.call_id,
            name=call.name,
            status=status,
            output=output,
            error=error,
            exit_code=exit_code,
            elapsed_seconds=time.monotonic() - start,
        )
