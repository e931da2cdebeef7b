"""
Event Bus — typed notifications from the runtime to the control plane.

Events are Pydantic models emitted onto an asyncio.Queue-backed dispatcher
that fans out to pattern-matched subscribers. The gateway subscribes once
per WebSocket connection and forwards matching events as JSON-RPC
notifications named ``event.<event_type>``.

Concurrency model:
  - emit() enqueues; non-blocking and sync-safe
  - A dispatcher task dequeues and fans out to matching handlers
  - Handler exceptions are logged but do not propagate
  - Events are dispatched in emission order
"""

from __future__ import annotations

import asyncio
import fnmatch as _fnmatch_mod
import re
import time
import uuid
from typing import Any, Callable, Coroutine, Literal, Optional

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

EventHandler = Callable[["VigilEvent"], Any] | Callable[["VigilEvent"], Coroutine[Any, Any, Any]]

# Splits CamelCase including acronyms: "RunStarted" → ["Run", "Started"]
_CAMEL_SPLIT_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z][a-z]*")


class VigilEvent(BaseModel):
    """Base class for every event on the bus.

    ``event_type`` is derived from the class name when not given:
    ``OutboundMessageEvent`` becomes ``outbound.message``.
    """

    event_type: str = ""
    emitted_at: float = Field(default_factory=time.time)

    def model_post_init(self, __context: Any) -> None:
        if not self.event_type:
            name = type(self).__name__.removesuffix("Event")
            parts = _CAMEL_SPLIT_RE.findall(name)
            self.event_type = ".".join(p.lower() for p in parts) if parts else name.lower()


class _Subscription:
    __slots__ = ("sub_id", "pattern", "handler", "_compiled")

    def __init__(self, sub_id: str, pattern: str, handler: EventHandler) -> None:
        self.sub_id = sub_id
        self.pattern = pattern
        self.handler = handler
        self._compiled: re.Pattern[str] = re.compile(_fnmatch_mod.translate(pattern))

    def matches(self, event_type: str) -> bool:
        return self._compiled.match(event_type) is not None


_SENTINEL = object()


class EventBus:
    """Async event bus with typed events and fnmatch-style subscriptions.

      "run.*"      matches "run.started", "run.finished", "run.failed"
      "tool.*"     matches "tool.approval.required"
      "*"          matches everything
    """

    def __init__(self, max_queue_size: int = 10000) -> None:
        self._queue: asyncio.Queue[VigilEvent | object] = asyncio.Queue(maxsize=max_queue_size)
        self._subscriptions: dict[str, _Subscription] = {}
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._running = False
        self._pending_done: dict[int, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._dispatcher_task = asyncio.create_task(
            self._dispatch_loop(), name="event-bus-dispatcher"
        )
        logger.info("event_bus.started")

    async def stop(self) -> None:
        """Drain the queue and stop the dispatcher."""
        if not self._running:
            return
        self._running = False
        try:
            self._queue.put_nowait(_SENTINEL)
        except asyncio.QueueFull:
            logger.warning("event_bus.stop_queue_full_cancelling_directly")
            if self._dispatcher_task is not None:
                self._dispatcher_task.cancel()
        if self._dispatcher_task is not None:
            try:
                await asyncio.wait_for(self._dispatcher_task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("event_bus.stop_timeout_cancelling", timeout=5.0)
                self._dispatcher_task.cancel()
                try:
                    await self._dispatcher_task
                except asyncio.CancelledError:
                    pass
            except asyncio.CancelledError:
                pass
            self._dispatcher_task = None
        for done_event in self._pending_done.values():
            done_event.set()
        self._pending_done.clear()
        logger.info("event_bus.stopped")

    # ------------------------------------------------------------------
    # Subscribe / Unsubscribe
    # ------------------------------------------------------------------

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """Subscribe to events matching *pattern*; returns a subscription ID."""
        sub_id = uuid.uuid4().hex[:12]
        self._subscriptions[sub_id] = _Subscription(sub_id, pattern, handler)
        logger.debug("event_bus.subscribed", pattern=pattern, sub_id=sub_id)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        removed = self._subscriptions.pop(subscription_id, None)
        if removed:
            logger.debug("event_bus.unsubscribed", sub_id=subscription_id)

    # ------------------------------------------------------------------
    # Emit
    # ------------------------------------------------------------------

    def emit(self, event: VigilEvent) -> None:
        """Enqueue an event for dispatch. Drops with a warning if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("event_bus.queue_full", event_type=event.event_type, dropped=True)

    async def emit_async(self, event: VigilEvent) -> None:
        """Emit an event and wait until every handler has run."""
        if not self._running:
            raise RuntimeError("emit_async called on a stopped EventBus")
        done = asyncio.Event()
        event_id = id(event)
        self._pending_done[event_id] = done
        self.emit(event)
        try:
            await asyncio.wait_for(done.wait(), timeout=10.0)
        except asyncio.TimeoutError:
            logger.warning("event_bus.emit_async_timeout", event_type=event.event_type)
            raise
        finally:
            self._pending_done.pop(event_id, None)

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while self._running:
            try:
                item = await self._queue.get()
            except asyncio.CancelledError:
                break
            if item is _SENTINEL:
                break
            await self._dispatch_event(item)  # type: ignore[arg-type]

        while not self._queue.empty():
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not _SENTINEL:
                await self._dispatch_event(item)  # type: ignore[arg-type]

    async def _dispatch_event(self, event: VigilEvent) -> None:
        coros = [
            self._invoke_handler(sub, event)
            for sub in list(self._subscriptions.values())
            if sub.matches(event.event_type)
        ]
        if coros:
            await asyncio.gather(*coros, return_exceptions=True)
        done = self._pending_done.get(id(event))
        if done is not None:
            done.set()

    @staticmethod
    async def _invoke_handler(sub: _Subscription, event: VigilEvent) -> None:
        try:
            result = sub.handler(event)
            if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                await result
        except Exception:
            logger.error(
                "event_bus.handler_error",
                pattern=sub.pattern,
                event_type=event.event_type,
                exc_info=True,
            )

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def is_running(self) -> bool:
        return self._running


# ---------------------------------------------------------------------------
# Event Definitions
# ---------------------------------------------------------------------------


class InboundMessageEvent(VigilEvent):
    """A message accepted for a session (user, heartbeat or cron)."""

    session_key: str
    source: str
    channel: str
    text: str


class OutboundMessageEvent(VigilEvent):
    """Agent output to deliver. Channel adapters subscribe to this."""

    session_key: str
    run_id: str
    channel: str
    text: str


class StreamChunkEvent(VigilEvent):
    """Partial model output as it streams in."""

    session_key: str
    run_id: str
    delta: str


class ToolApprovalRequiredEvent(VigilEvent):
    """A host execution is suspended pending operator approval."""

    approval_id: str
    session_key: str = ""
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    risk_tier: Literal["low", "medium", "high", "critical"] = "high"
    timeout_seconds: float = 0.0


class ToolApprovalResolvedEvent(VigilEvent):
    approval_id: str
    decision: Literal["allow", "deny", "timeout"]
    source: str


class ToolExecutedEvent(VigilEvent):
    session_key: str
    call_id: str
    tool_name: str
    status: str
    elapsed_seconds: float = 0.0


class RunStartedEvent(VigilEvent):
    run_id: str
    session_key: str
    source: str
    agent_id: str


class RunFinishedEvent(VigilEvent):
    run_id: str
    session_key: str
    reason: str
    model_calls: int = 0
    tool_calls: int = 0
    elapsed_seconds: float = 0.0
    delivered: bool = False


class RunFailedEvent(VigilEvent):
    """One explicit, operator-visible notification for an unrecoverable run."""

    run_id: str
    session_key: str
    reason: str
    error: str


class SessionCompactedEvent(VigilEvent):
    session_key: str
    compaction_marker: int
    turns_removed: int
    flush_completed: bool


class ProfileHealthChangedEvent(VigilEvent):
    profile_id: str
    provider: str
    health: str
    cooldown_until: Optional[float] = None


class SchedulerJobFiredEvent(VigilEvent):
    job_id: str
    kind: str
    session_key: str


class SchedulerJobFailedEvent(VigilEvent):
    job_id: str
    error: str
    next_fire_at: Optional[float] = None


class LogRecordEvent(VigilEvent):
    """Structured log line mirrored to subscribed operators."""

    level: str
    event: str
    fields: dict[str, Any] = Field(default_factory=dict)
