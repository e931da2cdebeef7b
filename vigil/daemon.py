"""
Vigil Daemon — the always-resident gateway process.

Owns every in-memory structure (run queues, quarantine set, scheduler,
gateway) and wires the subsystems together:

    inbound event (chat.send / scheduler)
      → SessionRunQueue (FIFO per session key)
      → AgentLoopExecutor (router + tool broker + context assembler)
      → SessionStore (durable record)
      → EventBus → subscribed WebSocket clients

Start with: vigil daemon
Or via systemd: vigil-daemon (entry point calls run_daemon())

Exit codes: 0 on a requested stop, EXIT_ADDRESS_IN_USE when another process
already holds the control-plane address, EXIT_LISTENER_FAILED when the
listener dies under a running daemon.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import ValidationError

from vigil import __version__
from vigil.api.profiles import AuthProfileStore
from vigil.api.providers import AnthropicProvider, ModelProvider
from vigil.api.router import CredentialRouter
from vigil.config import VigilConfig
from vigil.errors import GatewayAddressInUseError, SessionBusyError, SessionQuarantinedError
from vigil.events import (
    EventBus,
    InboundMessageEvent,
    OutboundMessageEvent,
    RunFailedEvent,
    RunFinishedEvent,
    RunStartedEvent,
    StreamChunkEvent,
)
from vigil.gateway import GatewayServer
from vigil.harness.context import ContextAssembler
from vigil.harness.loop import AgentLoopExecutor, LoopResult, RunOutcome
from vigil.harness.safety import ToolPolicy
from vigil.memory.session_store import SessionStore
from vigil.privacy.redaction import PIIRedactor
from vigil.rpc import RequestRouter
from vigil.scheduler import Scheduler
from vigil.tools.broker import ToolBroker
from vigil.tools.builtin import register_builtin_tools
from vigil.tools.executor import ToolExecutor
from vigil.tools.host import HostRunner
from vigil.tools.registry import ToolRegistry
from vigil.tools.sandbox import DockerSandbox
from vigil.types import InboundEvent
from vigil.workspace import WorkspaceContract

logger = structlog.get_logger(__name__)

EXIT_ADDRESS_IN_USE = 98  # EADDRINUSE on Linux
EXIT_LISTENER_FAILED = 1

_FAILED_OUTCOMES = frozenset({
    RunOutcome.ROUTER_EXHAUSTED,
    RunOutcome.PROVIDER_ERROR,
    RunOutcome.PERSISTENCE_FAILED,
    RunOutcome.CONTEXT_OVERFLOW,
    RunOutcome.INTERNAL_ERROR,
})


# ---------------------------------------------------------------------------
# Run queue
# ---------------------------------------------------------------------------


@dataclass
class RunTicket:
    """One submitted run: its event and the future its result lands in."""

    run_id: str
    event: InboundEvent
    future: asyncio.Future
    position: int = 0
    task: Optional[asyncio.Task] = None
    cancel_reason: Optional[str] = None
    submitted_at: float = field(default_factory=time.monotonic)

    @property
    def session_key(self) -> str:
        return self.event.session_key

    async def wait(self) -> LoopResult:
        """Wait for the result without letting the caller's cancellation kill the run."""
        return await asyncio.shield(self.future)


def cancelled_result(ticket: RunTicket, reason: str) -> LoopResult:
    return LoopResult(
        run_id=ticket.run_id,
        session_key=ticket.session_key,
        reason=RunOutcome.CANCELLED,
        error=reason,
    )


class SessionRunQueue:
    """FIFO per session key; one run at a time per key, keys in parallel.

    ``max_queued`` bounds the runs waiting behind the one in progress.
    """

    def __init__(
        self,
        execute: Callable[[RunTicket], Awaitable[LoopResult]],
        *,
        max_queued: int = 8,
    ) -> None:
        self._execute = execute
        self._max_queued = max(1, int(max_queued))
        self._pending: dict[str, deque[RunTicket]] = {}
        self._current: dict[str, RunTicket] = {}
        self._workers: dict[str, asyncio.Task] = {}

    def submit(self, event: InboundEvent, *, run_id: Optional[str] = None) -> RunTicket:
        key = event.session_key
        pending = self._pending.setdefault(key, deque())
        if len(pending) >= self._max_queued:
            raise SessionBusyError(
                f"session '{key}' already has {len(pending)} queued runs (limit {self._max_queued})"
            )
        ticket = RunTicket(
            run_id=run_id or f"run-{uuid.uuid4().hex[:12]}",
            event=event,
            future=asyncio.get_running_loop().create_future(),
            position=len(pending) + (1 if key in self._current else 0),
        )
        pending.append(ticket)
        if key not in self._workers:
            self._workers[key] = asyncio.create_task(self._drain(key), name=f"session-queue-{key}")
        return ticket

    async def _drain(self, key: str) -> None:
        try:
            while True:
                pending = self._pending.get(key)
                if not pending:
                    break
                ticket = pending.popleft()
                self._current[key] = ticket
                try:
                    result = await self._execute(ticket)
                except asyncio.CancelledError:
                    if not ticket.future.done():
                        ticket.future.set_result(cancelled_result(ticket, ticket.cancel_reason or "shutdown"))
                    raise
                finally:
                    self._current.pop(key, None)
                if not ticket.future.done():
                    ticket.future.set_result(result)
        finally:
            self._workers.pop(key, None)
            if not self._pending.get(key):
                self._pending.pop(key, None)

    def current(self, key: str) -> Optional[RunTicket]:
        return self._current.get(key)

    def find(self, run_id: str) -> Optional[RunTicket]:
        for ticket in self._current.values():
            if ticket.run_id == run_id:
                return ticket
        for pending in self._pending.values():
            for ticket in pending:
                if ticket.run_id == run_id:
                    return ticket
        return None

    def cancel(self, ticket: RunTicket, reason: str) -> bool:
        """Cancel a running ticket, or drop a waiting one with a cancelled result."""
        if ticket.future.done():
            return False
        ticket.cancel_reason = reason
        pending = self._pending.get(ticket.session_key)
        if pending is not None and ticket in pending:
            pending.remove(ticket)
            ticket.future.set_result(cancelled_result(ticket, reason))
            return True
        if ticket.task is not None and not ticket.task.done():
            ticket.task.cancel()
            return True
        return False

    def drop_pending(self, key: str, result_for: Callable[[RunTicket], LoopResult]) -> int:
        """Resolve every waiting ticket for *key* without running it."""
        pending = self._pending.get(key)
        dropped = 0
        while pending:
            ticket = pending.popleft()
            if not ticket.future.done():
                ticket.future.set_result(result_for(ticket))
            dropped += 1
        return dropped

    def depths(self) -> dict[str, int]:
        keys = set(self._pending) | set(self._current)
        return {
            key: len(self._pending.get(key, ())) + (1 if key in self._current else 0)
            for key in sorted(keys)
        }

    async def wait_idle(self, key: str) -> None:
        worker = self._workers.get(key)
        if worker is not None:
            await asyncio.gather(worker, return_exceptions=True)

    async def shutdown(self) -> None:
        for key in list(self._pending):
            self.drop_pending(key, lambda t: cancelled_result(t, "shutdown"))
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)


# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------


class GatewayDaemon:
    """Persistent process that keeps the agent reachable and on schedule."""

    def __init__(
        self,
        config: VigilConfig,
        *,
        providers: Optional[dict[str, ModelProvider]] = None,
    ) -> None:
        self._config = config
        self._shutdown_event = asyncio.Event()
        self._exit_code = 0
        self._started_at = 0.0
        self._quarantined: dict[str, str] = {}
        self._watchdog_task: Optional[asyncio.Task] = None

        self.event_bus = EventBus()

        self.store = SessionStore(
            config.session.sessions_dir,
            redactor=PIIRedactor(enabled=config.session.redact_before_persist),
            fsync=config.session.fsync,
        )
        self.workspace = WorkspaceContract(
            config.workspace.workspace_dir,
            field_max_chars=config.workspace.field_max_chars,
        )

        self.profiles = AuthProfileStore(
            config.provider.auth_profiles_path,
            fallback_api_key=config.provider.anthropic_api_key,
        )
        self.profiles.load()
        if providers is None:
            providers = {
                "anthropic": AnthropicProvider(
                    max_tokens=config.provider.max_tokens,
                    request_timeout_seconds=config.provider.request_timeout_seconds,
                    oauth_token_url=config.provider.oauth_token_url,
                    oauth_client_id=config.provider.oauth_client_id,
                ),
            }
        self.router = CredentialRouter(config.provider, self.profiles, providers, event_bus=self.event_bus)

        safety = config.safety
        self.registry = ToolRegistry()
        register_builtin_tools(self.registry, self.workspace, self.store, exec_timeout=safety.tool_default_timeout)
        self.policy = ToolPolicy(safety, config.sandbox, self.registry)
        self.sandbox = DockerSandbox(
            config.workspace.workspace_dir,
            docker_binary=config.sandbox.docker_binary,
            egress_network=config.sandbox.egress_network,
            max_output_chars=safety.tool_max_output_length,
        )
        self.broker = ToolBroker(
            self.registry,
            self.policy,
            ToolExecutor(
                self.registry,
                default_timeout=safety.tool_default_timeout,
                max_output_length=safety.tool_max_output_length,
            ),
            HostRunner(config.workspace.workspace_dir, max_output_chars=safety.tool_max_output_length),
            self.sandbox,
            default_timeout=safety.tool_default_timeout,
            max_output_length=safety.tool_max_output_length,
            event_bus=self.event_bus,
        )

        self.assembler = ContextAssembler(config.context, self.workspace, self.store)
        self.agent_loop = AgentLoopExecutor(
            self.router,
            self.broker,
            self.assembler,
            self.store,
            safety,
            config.context,
            event_bus=self.event_bus,
        )

        self.queue = SessionRunQueue(self._execute, max_queued=config.gateway.max_queued_runs_per_session)
        self.scheduler = Scheduler(
            config.scheduler,
            self.workspace,
            self._submit_scheduled,
            main_session_key=config.session.main_session_key,
            event_bus=self.event_bus,
        )

        self.rpc = RequestRouter(self, self.store, shutdown_callback=self._request_shutdown)
        self.gateway = GatewayServer(
            config.gateway,
            self.rpc,
            self.event_bus,
            approval_timeout=safety.approval_timeout_seconds,
        )
        self.rpc.set_active_connections_getter(lambda: self.gateway.active_connection_count)
        self.broker.set_approval_gate(self.gateway.request_approval)

    @property
    def main_session_key(self) -> str:
        return self._config.session.main_session_key

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """Full lifecycle: bind → serve → shutdown. Returns the exit code.

        Raises GatewayAddressInUseError when another process holds the address.
        """
        await self.event_bus.start()
        try:
            self.workspace.ensure_layout()
            await self.gateway.start(self._config.gateway.host, self._config.gateway.port)
            self._started_at = time.monotonic()
            await self.scheduler.start()
            self._watchdog_task = asyncio.create_task(self._watch_listener(), name="daemon-listener-watchdog")
            logger.info(
                "daemon.running",
                host=self._config.gateway.host,
                port=self.gateway.port,
                pid=os.getpid(),
                tools=self.registry.count,
                profiles=len(self.profiles.all()),
            )
            await self._shutdown_event.wait()
        finally:
            await self._cleanup()
        return self._exit_code

    async def _watch_listener(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=5.0)
                return
            except asyncio.TimeoutError:
                pass
            if not self.gateway.is_serving:
                logger.critical("daemon.listener_lost", port=self.gateway.port)
                self._exit_code = EXIT_LISTENER_FAILED
                self._request_shutdown("listener_lost")
                return

    async def _cleanup(self) -> None:
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

        await self.scheduler.stop()
        # Gateway first: denying pending approvals unblocks waiting runs.
        await self.gateway.stop()
        await self.queue.shutdown()
        await self.sandbox.cleanup_all()
        await self.event_bus.stop()
        logger.info("daemon.stopped", exit_code=self._exit_code)

    def _request_shutdown(self, reason: str) -> None:
        logger.info("daemon.shutdown_requested", reason=reason)
        self._shutdown_event.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Install SIGINT/SIGTERM handlers for graceful shutdown."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig, self._request_shutdown, f"daemon_signal_{sig.name.lower()}"
                )
            except NotImplementedError:
                pass

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def submit(self, event: InboundEvent) -> RunTicket:
        """Queue a run for the event's session.

        Raises SessionQuarantinedError or SessionBusyError; nothing is
        queued in either case.
        """
        key = SessionStore.validate_key(event.session_key)
        if key in self._quarantined:
            raise SessionQuarantinedError(
                f"session '{key}' is quarantined after: {self._quarantined[key]}. "
                "Delete it to resume."
            )
        ticket = self.queue.submit(event)
        logger.info(
            "daemon.run_queued",
            run_id=ticket.run_id,
            session_key=key,
            source=event.source,
            position=ticket.position,
        )
        self.event_bus.emit(InboundMessageEvent(
            session_key=key,
            source=event.source,
            channel=event.channel,
            text=event.text,
        ))
        return ticket

    async def _submit_scheduled(self, event: InboundEvent) -> LoopResult:
        return await self.submit(event).wait()

    async def _execute(self, ticket: RunTicket) -> LoopResult:
        event = ticket.event
        key = event.session_key
        if key in self._quarantined:
            return LoopResult(
                run_id=ticket.run_id,
                session_key=key,
                reason=RunOutcome.PERSISTENCE_FAILED,
                error=f"session quarantined: {self._quarantined[key]}",
            )

        agent_id = event.agent_id or self._config.provider.default_agent_id
        self.event_bus.emit(RunStartedEvent(
            run_id=ticket.run_id,
            session_key=key,
            source=event.source,
            agent_id=agent_id,
        ))
        logger.info("daemon.run_started", run_id=ticket.run_id, session_key=key, source=event.source)

        on_stream = None
        if event.source == "user":
            def on_stream(delta: str) -> None:
                self.event_bus.emit(StreamChunkEvent(session_key=key, run_id=ticket.run_id, delta=delta))

        run_task = asyncio.create_task(
            self.agent_loop.run(event, run_id=ticket.run_id, on_stream=on_stream),
            name=f"run-{ticket.run_id}",
        )
        ticket.task = run_task
        try:
            done, _ = await asyncio.wait({run_task}, timeout=self._config.gateway.run_timeout or None)
        except asyncio.CancelledError:
            run_task.cancel()
            await asyncio.gather(run_task, return_exceptions=True)
            raise
        if not done:
            ticket.cancel_reason = "run_timeout"
            logger.warning(
                "daemon.run_timeout",
                run_id=ticket.run_id,
                session_key=key,
                timeout=self._config.gateway.run_timeout,
            )
            run_task.cancel()
            await asyncio.gather(run_task, return_exceptions=True)

        if run_task.cancelled():
            result = cancelled_result(ticket, ticket.cancel_reason or "cancelled")
        elif run_task.exception() is not None:
            exc = run_task.exception()
            logger.error(
                "daemon.run_crashed",
                run_id=ticket.run_id,
                session_key=key,
                error=str(exc),
                exc_info=exc,
            )
            result = LoopResult(
                run_id=ticket.run_id,
                session_key=key,
                reason=RunOutcome.INTERNAL_ERROR,
                error=f"{type(exc).__name__}: {exc}",
            )
        else:
            result = run_task.result()

        self._finish(ticket, result)
        return result

    def _finish(self, ticket: RunTicket, result: LoopResult) -> None:
        event = ticket.event
        key = event.session_key

        if result.reason is RunOutcome.PERSISTENCE_FAILED:
            self._quarantine(key, result.error or "persistence failure")

        if result.reason in _FAILED_OUTCOMES:
            logger.error(
                "daemon.run_failed",
                run_id=result.run_id,
                session_key=key,
                reason=result.reason.value,
                error=result.error,
            )
            self.event_bus.emit(RunFailedEvent(
                run_id=result.run_id,
                session_key=key,
                reason=result.reason.value,
                error=result.error or result.reason.value,
            ))
            return

        delivered = result.deliverable and event.delivery == "announce"
        if delivered:
            self.event_bus.emit(OutboundMessageEvent(
                session_key=key,
                run_id=result.run_id,
                channel=event.channel,
                text=result.text,
            ))
        self.event_bus.emit(RunFinishedEvent(
            run_id=result.run_id,
            session_key=key,
            reason=result.reason.value,
            model_calls=result.model_calls,
            tool_calls=result.tool_calls,
            elapsed_seconds=result.elapsed_seconds,
            delivered=delivered,
        ))
        logger.info(
            "daemon.run_finished",
            run_id=result.run_id,
            session_key=key,
            reason=result.reason.value,
            delivered=delivered,
        )

    def _quarantine(self, key: str, error: str) -> None:
        self._quarantined[key] = error
        dropped = self.queue.drop_pending(key, lambda t: LoopResult(
            run_id=t.run_id,
            session_key=key,
            reason=RunOutcome.PERSISTENCE_FAILED,
            error=f"session quarantined: {error}",
        ))
        logger.error("daemon.session_quarantined", session_key=key, error=error, dropped_runs=dropped)

    def is_quarantined(self, key: str) -> bool:
        return key in self._quarantined

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def cancel_run(self, run_id: str, *, reason: str = "user_interrupt") -> bool:
        ticket = self.queue.find(run_id)
        if ticket is None:
            return False
        cancelled = self.queue.cancel(ticket, reason)
        logger.info("daemon.run_cancel_requested", run_id=run_id, reason=reason, cancelled=cancelled)
        return cancelled

    def cancel_session(self, key: str, *, reason: str = "user_interrupt") -> bool:
        """Cancel the run in progress for *key* and drop anything queued behind it."""
        dropped = self.queue.drop_pending(key, lambda t: cancelled_result(t, reason))
        current = self.queue.current(key)
        cancelled = current is not None and self.queue.cancel(current, reason)
        logger.info(
            "daemon.session_cancel_requested",
            session_key=key,
            reason=reason,
            cancelled=cancelled,
            dropped=dropped,
        )
        return cancelled or dropped > 0

    async def delete_session(self, key: str) -> bool:
        """Operator reset: stop its runs, delete it, unpin it and lift any quarantine."""
        SessionStore.validate_key(key)
        self.cancel_session(key, reason="session_deleted")
        await self.queue.wait_idle(key)
        deleted = await self.store.delete(key)
        self.router.unpin(key)
        lifted = self._quarantined.pop(key, None) is not None
        logger.info("daemon.session_deleted", session_key=key, deleted=deleted, quarantine_lifted=lifted)
        return deleted or lifted

    def status(self) -> dict[str, Any]:
        return {
            "daemon": {
                "version": __version__,
                "pid": os.getpid(),
                "uptime": round(time.monotonic() - self._started_at, 1) if self._started_at else 0.0,
            },
            "listener": self.gateway.status(),
            "profiles": self.router.status(),
            "scheduler": self.scheduler.status(),
            "runs": {
                "active": self.agent_loop.active_runs(),
                "queues": self.queue.depths(),
                "stats": self.agent_loop.stats,
            },
            "quarantined": dict(self._quarantined),
            "sandbox": {
                "enabled": self._config.sandbox.enabled,
                "live_containers": self.sandbox.live_containers,
            },
            "tools": self.registry.list_tools(),
        }


def run_daemon() -> None:
    """
    Entry point for the `vigil-daemon` console script and `vigil daemon`.

    Loads config, binds the listener, runs until stopped.
    """
    from vigil.main import attach_event_bus, configure_logging

    try:
        config = VigilConfig()
    except (ValidationError, ValueError) as e:
        print(f"[daemon] Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging)
    daemon = GatewayDaemon(config)
    attach_event_bus(daemon.event_bus)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    daemon._install_signal_handlers(loop)
    exit_code = 0
    try:
        exit_code = loop.run_until_complete(daemon.run())
    except GatewayAddressInUseError as e:
        logger.error("daemon.address_in_use", host=e.host, port=e.port)
        exit_code = EXIT_ADDRESS_IN_USE
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()
    if exit_code:
        sys.exit(exit_code)
