"""
The Agent Loop — one bounded run of model ↔ tool exchanges for one session.

    ASSEMBLING → AWAITING_MODEL → (TOOL_DISPATCH → ASSEMBLING → ...)* → TERMINAL

Each pass re-reads the session, so every step sees exactly what was
persisted by the step before it. An agent turn carrying tool calls is
persisted before dispatch. The tool turn carrying one terminal result per
call, in request order, is persisted before the next model call.

Terminal reasons:
  completed          the model answered without tool calls
  no_reply           the answer was a NO_REPLY / HEARTBEAT_OK sentinel;
                     persisted with suppressed=True, never delivered
  iteration_cap      the model-call cap was reached; a limit marker is persisted
  router_exhausted   no credential/model in the fallback chain answered
  provider_error     the provider rejected the request itself (400)
  persistence_failed the session could not be written; the run stops here
  context_overflow   the request is over budget even after compaction and
                     clipping
  cancelled          interrupt or run timeout; an aborted marker is persisted
                     and the CancelledError is re-raised to the caller
  internal_error     set by the daemon when a run raised something unexpected

Every aborted run first gives each tool call still waiting on a result a
failed one, so a persisted agent turn never has an unanswered call.

Compaction runs at most once per run. Its flush and summary requests are
housekeeping and do not count toward the model-call cap.
"""

from __future__ import annotations

import asyncio
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import structlog

from vigil.api.providers import ModelRequest, StreamCallback
from vigil.api.router import CredentialRouter
from vigil.config import ContextConfig, SafetyConfig
from vigil.errors import ProviderRequestError, RouterExhaustedError, SessionPersistenceError
from vigil.events import EventBus, SessionCompactedEvent
from vigil.harness.context import ContextAssembler
from vigil.harness.safety import ToolPolicy
from vigil.memory.session_store import SessionStore
from vigil.tools.broker import ToolBroker
from vigil.tools.builtin import MEMORY_TOOL_NAMES
from vigil.tools.executor import ToolContext
from vigil.types import InboundEvent, Role, ToolCall, ToolResult, ToolStatus, Turn, TurnKind

logger = structlog.get_logger(__name__)

NO_REPLY = "NO_REPLY"
HEARTBEAT_OK = "HEARTBEAT_OK"

_SENTINEL_RE = re.compile(
    r"^\s*(?:\[\s*(?:NO_REPLY|HEARTBEAT_OK)\s*\]|NO_REPLY|HEARTBEAT_OK)\s*\.?\s*$",
    re.IGNORECASE,
)

_SOURCE_KINDS = {
    "user": TurnKind.MESSAGE,
    "heartbeat": TurnKind.HEARTBEAT,
    "cron": TurnKind.CRON,
}


def is_no_reply(text: str) -> bool:
    return bool(_SENTINEL_RE.match(text or ""))


class LoopState(str, Enum):
    ASSEMBLING = "assembling"
    AWAITING_MODEL = "awaiting_model"
    TOOL_DISPATCH = "tool_dispatch"
    TERMINAL = "terminal"


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    NO_REPLY = "no_reply"
    ITERATION_CAP = "iteration_cap"
    ROUTER_EXHAUSTED = "router_exhausted"
    PROVIDER_ERROR = "provider_error"
    PERSISTENCE_FAILED = "persistence_failed"
    CONTEXT_OVERFLOW = "context_overflow"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


@dataclass
class LoopResult:
    """Everything the daemon needs to report a finished run."""
    run_id: str
    session_key: str
    reason: RunOutcome
    text: str = ""
    model_calls: int = 0
    tool_calls: int = 0
    elapsed_seconds: float = 0.0
    error: Optional[str] = None
    states: list[LoopState] = field(default_factory=list)

    @property
    def deliverable(self) -> bool:
        """True when there is user-visible text to send out."""
        return self.reason is RunOutcome.COMPLETED and bool(self.text.strip())


class _RunTrace:
    """Per-run mutable bookkeeping; lives only as long as the run."""

    def __init__(self, run_id: str, session_key: str):
        self.run_id = run_id
        self.session_key = session_key
        self.state = LoopState.ASSEMBLING
        self.states: list[LoopState] = []
        self.model_calls = 0
        self.tool_calls = 0
        self.compacted = False
        self.streamed: list[str] = []

    def enter(self, state: LoopState) -> None:
        self.state = state
        self.states.append(state)


class AgentLoopExecutor:
    """Runs one inbound event against its session to a terminal state."""

    def __init__(
        self,
        router: CredentialRouter,
        broker: ToolBroker,
        assembler: ContextAssembler,
        store: SessionStore,
        safety: SafetyConfig,
        context: ContextConfig,
        *,
        event_bus: Optional[EventBus] = None,
    ):
        self._router = router
        self._broker = broker
        self._assembler = assembler
        self._store = store
        self._safety = safety
        self._context = context
        self._event_bus = event_bus
        self._active: dict[str, _RunTrace] = {}

        self._total_runs = 0
        self._total_model_calls = 0
        self._total_tool_calls = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        event: InboundEvent,
        *,
        run_id: Optional[str] = None,
        on_stream: Optional[StreamCallback] = None,
    ) -> LoopResult:
        run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        key = event.session_key
        trace = _RunTrace(run_id, key)
        self._active[run_id] = trace
        self._total_runs += 1
        start = time.monotonic()

        def _stream(delta: str) -> Any:
            trace.streamed.append(delta)
            if on_stream is not None:
                return on_stream(delta)
            return None

        logger.info("agent_loop.run_started", run_id=run_id, session_key=key, source=event.source)
        try:
            reason, text, error = await self._drive(event, trace, _stream)
        except asyncio.CancelledError:
            state = trace.state
            trace.enter(LoopState.TERMINAL)
            await self._abort(
                key,
                self._aborted_text(trace, state),
                call_error=f"aborted: run cancelled during {state.value}",
            )
            logger.warning(
                "agent_loop.run_cancelled",
                run_id=run_id,
                session_key=key,
                model_calls=trace.model_calls,
            )
            raise
        finally:
            self._active.pop(run_id, None)
            self._total_model_calls += trace.model_calls
            self._total_tool_calls += trace.tool_calls

        trace.enter(LoopState.TERMINAL)
        result = LoopResult(
            run_id=run_id,
            session_key=key,
            reason=reason,
            text=text,
            model_calls=trace.model_calls,
            tool_calls=trace.tool_calls,
            elapsed_seconds=time.monotonic() - start,
            error=error,
            states=list(trace.states),
        )
        logger.info(
            "agent_loop.run_finished",
            run_id=run_id,
            session_key=key,
            reason=reason.value,
            model_calls=result.model_calls,
            tool_calls=result.tool_calls,
            elapsed_seconds=round(result.elapsed_seconds, 2),
        )
        return result

    def active_runs(self) -> list[dict[str, Any]]:
        return [
            {
                "run_id": t.run_id,
                "session_key": t.session_key,
                "state": t.state.value,
                "model_calls": t.model_calls,
                "tool_calls": t.tool_calls,
            }
            for t in self._active.values()
        ]

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_runs": self._total_runs,
            "total_model_calls": self._total_model_calls,
            "total_tool_calls": self._total_tool_calls,
        }

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _drive(
        self,
        event: InboundEvent,
        trace: _RunTrace,
        on_stream: StreamCallback,
    ) -> tuple[RunOutcome, str, Optional[str]]:
        key = event.session_key
        agent_id = event.agent_id
        tool_context = ToolContext(session_key=key, run_id=trace.run_id, agent_id=agent_id or "")
        try:
            # Idle time is measured up to this event, not to its own turn.
            idle_since = (await self._store.load_or_create(key)).last_activity_at
            await self._store.append(key, Turn(
                role=Role.USER,
                kind=_SOURCE_KINDS.get(event.source, TurnKind.MESSAGE),
                content=event.text,
                timestamp=event.received_at,
            ))

            while True:
                trace.enter(LoopState.ASSEMBLING)
                tool_text = self._broker.describe_tools()
                session = await self._store.load_or_create(key)
                ctx = self._assembler.assemble(session, tool_text=tool_text, idle_since=idle_since)
                if self._assembler.needs_compaction(ctx.estimated_tokens):
                    if not trace.compacted:
                        trace.compacted = True
                        await self._compact(key, agent_id, tool_context, tool_text)
                        session = await self._store.load_or_create(key)
                        ctx = self._assembler.assemble(session, tool_text=tool_text, idle_since=idle_since)
                    if self._assembler.needs_compaction(ctx.estimated_tokens):
                        ctx = self._assembler.assemble(
                            session, tool_text=tool_text, idle_since=idle_since, shrink=True
                        )
                    if self._assembler.needs_compaction(ctx.estimated_tokens):
                        error = (
                            f"request needs ~{ctx.estimated_tokens} tokens, "
                            f"budget is {self._context.input_budget_tokens}"
                        )
                        logger.error(
                            "agent_loop.context_overflow",
                            run_id=trace.run_id,
                            session_key=key,
                            estimated_tokens=ctx.estimated_tokens,
                            budget=self._context.input_budget_tokens,
                        )
                        await self._abort(
                            key,
                            f"Run aborted: context does not fit the model window ({error})",
                            call_error="aborted: context window exceeded",
                        )
                        return RunOutcome.CONTEXT_OVERFLOW, "", error

                if trace.model_calls >= self._safety.max_model_calls:
                    await self._store.append(key, Turn(
                        role=Role.SYSTEM,
                        kind=TurnKind.LIMIT,
                        content=(
                            f"Run stopped after {trace.model_calls} model calls "
                            "(limit reached). Work may be incomplete."
                        ),
                    ))
                    logger.warning(
                        "agent_loop.iteration_cap",
                        run_id=trace.run_id,
                        session_key=key,
                        cap=self._safety.max_model_calls,
                    )
                    return RunOutcome.ITERATION_CAP, "", None

                trace.enter(LoopState.AWAITING_MODEL)
                trace.streamed.clear()
                response = await self._router.complete(
                    agent_id,
                    key,
                    ModelRequest(
                        system=ctx.system,
                        messages=ctx.messages,
                        tools=self._broker.tool_schemas(),
                    ),
                    on_stream=on_stream,
                )
                trace.model_calls += 1

                if not response.tool_calls:
                    suppressed = is_no_reply(response.text)
                    await self._store.append(key, Turn(
                        role=Role.AGENT,
                        content=response.text,
                        token_estimate=response.output_tokens,
                        suppressed=suppressed,
                    ))
                    if suppressed:
                        return RunOutcome.NO_REPLY, "", None
                    return RunOutcome.COMPLETED, response.text, None

                await self._store.append(key, Turn(
                    role=Role.AGENT,
                    content=response.text,
                    tool_calls=response.tool_calls,
                    token_estimate=response.output_tokens,
                ))

                trace.enter(LoopState.TOOL_DISPATCH)
                results = await self._dispatch_all(response.tool_calls, tool_context)
                trace.tool_calls += len(results)
                await self._store.append(key, Turn(role=Role.TOOL, tool_results=results))

        except SessionPersistenceError as e:
            logger.error("agent_loop.persistence_failed", run_id=trace.run_id, session_key=key, error=str(e))
            await self._abort(
                key,
                f"Run aborted: session could not be saved ({e})",
                call_error="aborted: session could not be saved",
            )
            return RunOutcome.PERSISTENCE_FAILED, "", str(e)
        except RouterExhaustedError as e:
            await self._abort(
                key,
                f"Run aborted: no model available ({e})",
                call_error="aborted: no model available",
            )
            return RunOutcome.ROUTER_EXHAUSTED, "", str(e)
        except ProviderRequestError as e:
            logger.error("agent_loop.provider_rejected_request", run_id=trace.run_id, error=str(e))
            await self._abort(
                key,
                f"Run aborted: request rejected by provider ({e})",
                call_error="aborted: request rejected by provider",
            )
            return RunOutcome.PROVIDER_ERROR, "", str(e)

    async def _dispatch_all(self, calls: list[ToolCall], context: ToolContext) -> list[ToolResult]:
        """Run calls concurrently; results come back in request order."""
        return list(await asyncio.gather(*(
            self._dispatch_one(call, context) for call in calls
        )))

    async def _dispatch_one(
        self,
        call: ToolCall,
        context: ToolContext,
        policy: Optional[ToolPolicy] = None,
    ) -> ToolResult:
        try:
            return await self._broker.dispatch(call, policy, context=context)
        except (asyncio.CancelledError, SessionPersistenceError):
            raise
        except Exception as e:
            logger.error("agent_loop.dispatch_error", tool_name=call.name, error=str(e), exc_info=True)
            return ToolResult(
                call_id=call.call_id,
                name=call.name,
                status=ToolStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
            )

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def _compact(
        self,
        key: str,
        agent_id: Optional[str],
        tool_context: ToolContext,
        tool_text: str,
    ) -> None:
        flush_policy = self._broker.policy.restricted_to(MEMORY_TOOL_NAMES)

        async def _flush(session_key: str) -> bool:
            session = await self._store.load_or_create(session_key)
            ctx = self._assembler.assemble(session, tool_text=tool_text)
            response = await self._router.complete(
                agent_id,
                session_key,
                ModelRequest(
                    system=ctx.system,
                    messages=ctx.messages,
                    tools=self._broker.tool_schemas(flush_policy),
                ),
            )
            await self._store.append(session_key, Turn(
                role=Role.AGENT,
                kind=TurnKind.MEMORY_FLUSH,
                content=response.text,
                tool_calls=response.tool_calls,
                suppressed=True,
            ))
            if response.tool_calls:
                results = list(await asyncio.gather(*(
                    self._dispatch_one(call, tool_context, flush_policy)
                    for call in response.tool_calls
                )))
                await self._store.append(session_key, Turn(
                    role=Role.TOOL,
                    kind=TurnKind.MEMORY_FLUSH,
                    tool_results=results,
                ))
            return True

        async def _summarize(system: str, messages: list[dict[str, Any]]) -> str:
            response = await self._router.complete(
                agent_id,
                key,
                ModelRequest(
                    system=system,
                    messages=messages,
                    max_tokens=self._context.summary_max_tokens,
                ),
            )
            return response.text

        try:
            outcome = await self._assembler.compact(
                key, flush=_flush, summarize=_summarize, tool_text=tool_text
            )
        except SessionPersistenceError:
            raise
        except (RouterExhaustedError, ProviderRequestError) as e:
            # The run goes on with the uncompacted transcript.
            logger.warning("agent_loop.compaction_failed", session_key=key, error=str(e))
            return
        if outcome is not None and self._event_bus is not None:
            self._event_bus.emit(SessionCompactedEvent(
                session_key=key,
                compaction_marker=outcome.compaction_marker,
                turns_removed=outcome.turns_removed,
                flush_completed=outcome.flush_completed,
            ))

    # ------------------------------------------------------------------
    # Markers
    # ------------------------------------------------------------------

    @staticmethod
    def _aborted_text(trace: _RunTrace, state: LoopState) -> str:
        partial = "".join(trace.streamed).strip()
        if partial:
            return f"Run cancelled during {state.value}. Partial output: {partial[:2000]}"
        return f"Run cancelled during {state.value}."

    async def _abort(self, key: str, text: str, *, call_error: str) -> None:
        """Close any open tool calls, then persist the aborted marker."""
        try:
            await self._store.close_open_calls(key, call_error)
        except SessionPersistenceError as e:
            logger.error("agent_loop.open_calls_not_closed", session_key=key, error=str(e))
        await self._persist_marker(key, TurnKind.ABORTED, text)

    async def _persist_marker(self, key: str, kind: TurnKind, text: str) -> None:
        """Best effort: a failing store must not mask the original outcome."""
        try:
            await self._store.append(key, Turn(role=Role.SYSTEM, kind=kind, content=text))
        except SessionPersistenceError as e:
            logger.error("agent_loop.marker_not_persisted", session_key=key, kind=kind.value, error=str(e))
