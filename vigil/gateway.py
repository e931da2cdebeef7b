"""
Gateway Server — the daemon's one listening socket.

WebSocket + HTTP server built on aiohttp. The gateway owns connection
state (auth, event subscriptions, tool approvals) and hands every other
JSON-RPC method to the RequestRouter.

Routes:
  GET  /ws       WebSocket (JSON-RPC 2.0)
  GET  /health   Health check (unauthenticated)

The listener is bound without SO_REUSEADDR/SO_REUSEPORT, so a second daemon
on the same address fails at bind time. That failure is the singleton
guarantee; there is no PID or lock file.
"""

from __future__ import annotations

import asyncio
import errno
import fnmatch
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog
from aiohttp import WSMsgType, web

from vigil.config import GatewayConfig
from vigil.errors import GatewayAddressInUseError
from vigil.events import EventBus, ToolApprovalRequiredEvent, ToolApprovalResolvedEvent, VigilEvent
from vigil.rpc import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    PARSE_ERROR,
    UNAUTHORIZED,
    RequestRouter,
    make_error,
    make_notification,
    make_response,
)

logger = structlog.get_logger(__name__)

_MAX_SUBS = 100
_MAX_PAT_LEN = 256
_MAX_AUTH_FAILURES = 3
_MAX_INFLIGHT_REQUESTS = 32


@dataclass
class ClientConnection:
    """Per-WebSocket connection state."""

    conn_id: str
    ws: web.WebSocketResponse
    remote: str = ""
    client_type: str = "cli"
    authenticated: bool = False
    session_key: str = ""
    can_approve_tools: bool = False
    subscriptions: set[str] = field(default_factory=set)  # event type patterns
    requests: set[asyncio.Task[None]] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.monotonic)


class GatewayServer:
    """WebSocket + HTTP gateway server.

    Lifecycle: create → start() → (serve requests) → stop()
    """

    def __init__(
        self,
        config: GatewayConfig,
        router: RequestRouter,
        event_bus: EventBus,
        *,
        approval_timeout: float = 120.0,
    ) -> None:
        self._config = config
        self._router = router
        self._event_bus = event_bus
        self._auth_token = (config.auth_token or "").strip() or None
        self._approval_timeout = approval_timeout

        self._max_connections = max(1, config.max_connections)
        self._connection_timeout = max(1.0, config.connection_timeout)

        self._connections: dict[str, ClientConnection] = {}
        self._connection_count = 0
        self._rejected_count = 0

        # Fire-and-forget push tasks (tracked to cancel on shutdown)
        self._push_tasks: set[asyncio.Task[None]] = set()

        # Pending tool approvals: approval_id → asyncio.Future[str]
        self._pending_approvals: dict[str, asyncio.Future[str]] = {}

        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._started_at: float = 0.0
        self._host = ""
        self._port = 0

        self._timeout_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, host: str, port: int) -> None:
        """Bind the listener. Raises GatewayAddressInUseError if the address is taken."""
        self._app = web.Application()
        self._app.router.add_get("/ws", self._handle_ws)
        self._app.router.add_get("/health", self._handle_health)

        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(
            self._runner,
            host,
            port,
            reuse_address=False,
            reuse_port=False,
        )
        try:
            await self._site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            self._app = None
            if e.errno == errno.EADDRINUSE:
                raise GatewayAddressInUseError(host, port) from e
            raise
        self._started_at = time.monotonic()
        self._host = host
        self._port = self._bound_port() or port

        self._timeout_task = asyncio.create_task(
            self._timeout_loop(), name="gateway-timeout-checker"
        )
        logger.info(
            "gateway.started",
            host=host,
            port=self._port,
            auth_required=self._auth_token is not None,
        )

    def _bound_port(self) -> int:
        if self._runner is None:
            return 0
        for address in self._runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return 0

    async def stop(self) -> None:
        """Graceful shutdown: deny pending approvals, close connections, unbind."""
        if self._timeout_task is not None:
            self._timeout_task.cancel()
            try:
                await self._timeout_task
            except asyncio.CancelledError:
                pass
            self._timeout_task = None

        self._deny_pending("gateway_shutdown")

        for task in self._push_tasks:
            task.cancel()
        if self._push_tasks:
            await asyncio.gather(*self._push_tasks, return_exceptions=True)
        self._push_tasks.clear()

        close_tasks = []
        for conn in list(self._connections.values()):
            for task in conn.requests:
                task.cancel()
            close_tasks.append(self._close_connection(conn, "server_shutdown"))
        if close_tasks:
            await asyncio.gather(*close_tasks, return_exceptions=True)

        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._app = None

        logger.info("gateway.stopped")

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_listening(self) -> bool:
        return self._site is not None

    @property
    def is_serving(self) -> bool:
        server = getattr(self._site, "_server", None) if self._site is not None else None
        return server is not None and server.is_serving()

    @property
    def active_connection_count(self) -> int:
        return len(self._connections)

    @property
    def has_approver(self) -> bool:
        return any(
            c.can_approve_tools and not c.ws.closed
            for c in self._connections.values()
        )

    def status(self) -> dict[str, Any]:
        return {
            "listening": self.is_listening,
            "host": self._host,
            "port": self._port,
            "uptime": round(time.monotonic() - self._started_at, 1) if self._started_at else 0.0,
            "connections": len(self._connections),
            "connections_total": self._connection_count,
            "connections_rejected": self._rejected_count,
            "approvers": sum(1 for c in self._connections.values() if c.can_approve_tools),
            "pending_approvals": len(self._pending_approvals),
            "auth_required": self._auth_token is not None,
        }

    # ------------------------------------------------------------------
    # HTTP handlers
    # ------------------------------------------------------------------

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check — unauthenticated, for monitoring."""
        uptime = time.monotonic() - self._started_at if self._started_at else 0.0
        return web.json_response({
            "status": "ok",
            "uptime": round(uptime, 1),
            "connections": len(self._connections),
        })

    # ------------------------------------------------------------------
    # WebSocket handler
    # ------------------------------------------------------------------

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        """Handle a WebSocket connection lifecycle."""
        remote = request.remote or ""
        if len(self._connections) >= self._max_connections:
            self._rejected_count += 1
            logger.warning(
                "gateway.connection_rejected",
                remote=remote,
                reason="max_connections",
                active=len(self._connections),
                max=self._max_connections,
            )
            ws = web.WebSocketResponse()
            await ws.prepare(request)
            await ws.send_json(make_error(None, INVALID_REQUEST, "max connections reached"))
            await ws.close()
            return ws

        ws = web.WebSocketResponse(
            heartbeat=30.0,
            max_msg_size=4 * 1024 * 1024,  # 4 MB
        )
        await ws.prepare(request)

        # Re-check after prepare (closes TOCTOU window from concurrent upgrades)
        if len(self._connections) >= self._max_connections:
            self._rejected_count += 1
            logger.warning("gateway.connection_rejected", remote=remote, reason="max_connections")
            await ws.send_json(make_error(None, INVALID_REQUEST, "max connections reached"))
            await ws.close()
            return ws

        self._connection_count += 1
        conn = ClientConnection(conn_id=uuid.uuid4().hex[:12], ws=ws, remote=remote)
        self._connections[conn.conn_id] = conn
        logger.info("gateway.ws_connected", conn_id=conn.conn_id, remote=remote)

        sub_id = self._event_bus.subscribe("*", lambda evt: self._push_event(conn, evt))
        auth_failures = 0

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    conn.last_activity = time.monotonic()

                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        await ws.send_json(make_error(None, PARSE_ERROR, "invalid JSON"))
                        continue

                    if not isinstance(data, dict):
                        await ws.send_json(make_error(None, INVALID_REQUEST, "expected JSON object"))
                        continue

                    if not self._check_auth(data, conn):
                        auth_failures += 1
                        await ws.send_json(make_error(data.get("id"), UNAUTHORIZED, "unauthorized"))
                        logger.warning(
                            "gateway.auth_rejected",
                            conn_id=conn.conn_id,
                            remote=remote,
                            failures=auth_failures,
                        )
                        if auth_failures >= _MAX_AUTH_FAILURES:
                            self._rejected_count += 1
                            logger.warning(
                                "gateway.auth_max_failures",
                                conn_id=conn.conn_id,
                                failures=auth_failures,
                            )
                            break
                        continue

                    method = data.get("method", "")
                    params = data.get("params", {})
                    req_id = data.get("id")

                    if not isinstance(method, str) or not method:
                        await ws.send_json(make_error(req_id, INVALID_REQUEST, "method required"))
                        continue
                    if params is None:
                        params = {}
                    if not isinstance(params, dict):
                        await ws.send_json(make_error(req_id, INVALID_REQUEST, "params must be an object"))
                        continue

                    if method == "auth":
                        await self._handle_auth(conn, params, req_id)
                        auth_failures = 0
                        continue

                    if method == "events.subscribe":
                        await self._handle_subscribe(conn, params, req_id)
                        continue

                    if method == "events.unsubscribe":
                        await self._handle_unsubscribe(conn, params, req_id)
                        continue

                    if method == "tool.approve":
                        await self._handle_tool_approve(conn, params, req_id)
                        continue

                    if method == "stop":
                        response = await self._router.dispatch(method, params, req_id, conn.session_key)
                        await ws.send_json(response)
                        break

                    # Long calls (chat.send) run beside the read loop so the
                    # same connection can still cancel or approve.
                    if len(conn.requests) >= _MAX_INFLIGHT_REQUESTS:
                        await ws.send_json(make_error(req_id, INVALID_REQUEST, "too many requests in flight"))
                        continue
                    task = asyncio.create_task(
                        self._serve_request(conn, method, params, req_id),
                        name=f"gateway-request-{conn.conn_id}",
                    )
                    conn.requests.add(task)
                    task.add_done_callback(conn.requests.discard)

                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "gateway.ws_protocol_error",
                        conn_id=conn.conn_id,
                        error=str(ws.exception()),
                    )
                    break
                elif msg.type == WSMsgType.CLOSE:
                    break

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("gateway.ws_error", conn_id=conn.conn_id, error=str(e), exc_info=True)
        finally:
            self._event_bus.unsubscribe(sub_id)
            for task in list(conn.requests):
                task.cancel()
            self._connections.pop(conn.conn_id, None)

            # If this was the last approver, pending approvals can never be answered
            if conn.can_approve_tools and not self.has_approver:
                self._deny_pending("approver_disconnected")

            if not ws.closed:
                await ws.close()
            logger.info(
                "gateway.ws_disconnected",
                conn_id=conn.conn_id,
                remote=remote,
                duration=round(time.time() - conn.connected_at, 1),
            )

        return ws

    async def _serve_request(
        self,
        conn: ClientConnection,
        method: str,
        params: dict[str, Any],
        req_id: str | int | None,
    ) -> None:
        response = await self._router.dispatch(method, params, req_id, conn.session_key)
        if req_id is not None:
            await self._safe_send(conn, response)

    # ------------------------------------------------------------------
    # Per-connection methods
    # ------------------------------------------------------------------

    async def _handle_auth(
        self, conn: ClientConnection, params: dict[str, Any], req_id: str | int | None
    ) -> None:
        conn.authenticated = True
        client_type = params.get("client_type", "cli")
        conn.client_type = client_type if isinstance(client_type, str) else "cli"
        session_key = params.get("session_key", "")
        conn.session_key = session_key if isinstance(session_key, str) else ""
        # Approval rights need a verified token when one is configured.
        token_verified = not self._auth_token or (
            isinstance(params.get("auth_token"), str)
            and hmac.compare_digest(params.get("auth_token", ""), self._auth_token)
        )
        wants_approver = bool(params.get("approver", conn.client_type == "cli"))
        conn.can_approve_tools = wants_approver and token_verified
        logger.info(
            "gateway.authenticated",
            conn_id=conn.conn_id,
            client_type=conn.client_type,
            approver=conn.can_approve_tools,
        )
        await conn.ws.send_json(make_response(req_id, {
            "status": "authenticated",
            "conn_id": conn.conn_id,
            "can_approve_tools": conn.can_approve_tools,
        }))

    async def _handle_subscribe(
        self, conn: ClientConnection, params: dict[str, Any], req_id: str | int | None
    ) -> None:
        types = params.get("types", [])
        if not isinstance(types, list) or not types:
            await conn.ws.send_json(make_error(req_id, INVALID_PARAMS, "types must be a non-empty list"))
            return
        valid = [t for t in types if isinstance(t, str) and t and len(t) <= _MAX_PAT_LEN]
        if len(conn.subscriptions) + len(valid) > _MAX_SUBS:
            valid = valid[: max(0, _MAX_SUBS - len(conn.subscriptions))]
        conn.subscriptions.update(valid)
        await conn.ws.send_json(make_response(req_id, {"subscriptions": sorted(conn.subscriptions)}))

    async def _handle_unsubscribe(
        self, conn: ClientConnection, params: dict[str, Any], req_id: str | int | None
    ) -> None:
        types = params.get("types", [])
        if not isinstance(types, list) or not types:
            await conn.ws.send_json(make_error(req_id, INVALID_PARAMS, "types must be a non-empty list"))
            return
        conn.subscriptions.difference_update(str(t) for t in types)
        await conn.ws.send_json(make_response(req_id, {"subscriptions": sorted(conn.subscriptions)}))

    async def _handle_tool_approve(
        self, conn: ClientConnection, params: dict[str, Any], req_id: str | int | None
    ) -> None:
        if not conn.can_approve_tools:
            await conn.ws.send_json(make_error(req_id, UNAUTHORIZED, "client not authorized to approve tools"))
            return
        approval_id = params.get("approval_id", "")
        decision = params.get("decision", "")
        if not isinstance(approval_id, str) or not approval_id or decision not in ("allow", "deny"):
            await conn.ws.send_json(make_error(
                req_id, INVALID_PARAMS, "approval_id and decision (allow/deny) required",
            ))
            return
        resolved = self._resolve_approval(approval_id, decision, f"ws:{conn.conn_id}")
        await conn.ws.send_json(make_response(req_id, {"resolved": resolved, "approval_id": approval_id}))

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _check_auth(self, msg: dict[str, Any], conn: ClientConnection) -> bool:
        """Validate auth token using constant-time comparison.

        If no auth_token is configured, all connections are authorized.
        Once a connection authenticates, subsequent messages skip the check.
        """
        if not self._auth_token:
            return True
        if conn.authenticated:
            return True

        params = msg.get("params")
        if not isinstance(params, dict):
            return False

        provided = params.get("auth_token", "")
        if not isinstance(provided, str) or not provided:
            return False

        return hmac.compare_digest(provided, self._auth_token)

    # ------------------------------------------------------------------
    # Tool approval
    # ------------------------------------------------------------------

    def _resolve_approval(self, approval_id: str, decision: str, source: str) -> bool:
        """Resolve a pending tool approval. Returns True if resolved."""
        future = self._pending_approvals.get(approval_id)
        if future is None or future.done():
            return False
        future.set_result(decision)
        self._event_bus.emit(ToolApprovalResolvedEvent(
            approval_id=approval_id,
            decision=decision,
            source=source,
        ))
        logger.info("gateway.approval_resolved", approval_id=approval_id, decision=decision, source=source)
        return True

    def _deny_pending(self, source: str) -> None:
        for approval_id in list(self._pending_approvals):
            self._resolve_approval(approval_id, "deny", f"gateway:{source}")

    async def request_approval(
        self,
        session_key: str,
        tool_name: str,
        arguments: dict[str, Any],
        risk_level: str,
    ) -> bool:
        """Ask connected operators to allow a host execution.

        Emits ``tool.approval.required`` and waits for ``tool.approve`` from a
        connection with approval rights. Denies at once when no such
        connection exists, and on timeout.
        """
        if not self.has_approver:
            logger.info("gateway.approval_no_approver", session_key=session_key, tool_name=tool_name)
            return False

        approval_id = uuid.uuid4().hex[:12]
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        self._pending_approvals[approval_id] = future

        self._event_bus.emit(ToolApprovalRequiredEvent(
            approval_id=approval_id,
            session_key=session_key,
            tool_name=tool_name,
            arguments=arguments,
            risk_tier=risk_level if risk_level in ("low", "medium", "high", "critical") else "high",
            timeout_seconds=self._approval_timeout,
        ))
        logger.info(
            "gateway.approval_requested",
            approval_id=approval_id,
            session_key=session_key,
            tool_name=tool_name,
        )

        try:
            decision = await asyncio.wait_for(future, timeout=self._approval_timeout)
            return decision == "allow"
        except asyncio.TimeoutError:
            self._event_bus.emit(ToolApprovalResolvedEvent(
                approval_id=approval_id,
                decision="timeout",
                source="gateway",
            ))
            logger.warning("gateway.approval_timeout", approval_id=approval_id, tool_name=tool_name)
            return False
        finally:
            self._pending_approvals.pop(approval_id, None)

    # ------------------------------------------------------------------
    # Event push
    # ------------------------------------------------------------------

    def _push_event(self, conn: ClientConnection, event: VigilEvent) -> None:
        """Forward an event as ``event.<type>`` if it matches a subscription.

        Clients with no subscriptions receive nothing.
        """
        if conn.ws.closed or not conn.subscriptions:
            return
        event_type = event.event_type
        if not any(fnmatch.fnmatch(event_type, pat) for pat in conn.subscriptions):
            return
        notification = make_notification(f"event.{event_type}", event.model_dump(mode="json"))
        task = asyncio.create_task(self._safe_send(conn, notification))
        self._push_tasks.add(task)
        task.add_done_callback(self._push_tasks.discard)

    async def _safe_send(self, conn: ClientConnection, data: dict[str, Any]) -> None:
        """Send JSON to a WebSocket; a closed connection is cleaned up by its handler."""
        if conn.ws.closed:
            return
        try:
            await conn.ws.send_json(data)
        except (ConnectionError, RuntimeError) as e:
            logger.debug("gateway.send_failed", conn_id=conn.conn_id, error=str(e))

    # ------------------------------------------------------------------
    # Timeout checker
    # ------------------------------------------------------------------

    async def _timeout_loop(self) -> None:
        """Periodically close idle connections."""
        while True:
            await asyncio.sleep(min(30.0, self._connection_timeout))
            now = time.monotonic()
            for conn in list(self._connections.values()):
                if conn.requests:
                    continue
                idle = now - conn.last_activity
                if idle >= self._connection_timeout:
                    logger.info(
                        "gateway.connection_timed_out",
                        conn_id=conn.conn_id,
                        idle_seconds=round(idle, 1),
                    )
                    await self._close_connection(conn, "idle_timeout")

    async def _close_connection(self, conn: ClientConnection, reason: str) -> None:
        try:
            if not conn.ws.closed:
                await conn.ws.close(code=1000, message=reason.encode("utf-8"))
        except (ConnectionError, RuntimeError) as e:
            logger.debug("gateway.close_failed", conn_id=conn.conn_id, error=str(e))
