"""Shared daemon connection helper for CLI commands.

Manages WebSocket connections to the Vigil gateway, with authentication,
JSON-RPC calls, and event stream subscriptions.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, AsyncIterator

import aiohttp
import click
import structlog
from pydantic import ValidationError

from vigil.config import GatewayConfig

logger = structlog.get_logger(__name__)

_RPC_TIMEOUT = 30.0


class DaemonNotRunning(click.ClickException):
    """Raised when the daemon is not reachable."""

    def __init__(self) -> None:
        super().__init__("Vigil daemon is not running. Start with: vigil daemon")


class RpcError(click.ClickException):
    """A JSON-RPC error response from the daemon."""

    def __init__(self, code: int, message: str, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data or {}


class DaemonConnection:
    """WebSocket connection to the daemon gateway.

    Handles connection, authentication, JSON-RPC calls, and event streaming.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 18900) -> None:
        self._host = host
        self._port = port
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._session: aiohttp.ClientSession | None = None
        self._pending: dict[str, asyncio.Future[dict]] = {}
        self._event_queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=1000)
        self._reader_task: asyncio.Task[None] | None = None
        self.can_approve_tools = False

    @property
    def url(self) -> str:
        return f"ws://{self._host}:{self._port}/ws"

    async def connect(
        self,
        auth_token: str | None = None,
        *,
        session_key: str | None = None,
        approver: bool = False,
    ) -> None:
        """Open a WebSocket connection and authenticate."""
        try:
            self._session = aiohttp.ClientSession()
            self._ws = await self._session.ws_connect(self.url)
        except (aiohttp.ClientError, OSError) as e:
            if self._session:
                await self._session.close()
                self._session = None
            raise DaemonNotRunning() from e

        self._reader_task = asyncio.create_task(self._read_loop())

        params: dict[str, Any] = {"client_type": "cli", "approver": approver}
        if auth_token:
            params["auth_token"] = auth_token
        if session_key:
            params["session_key"] = session_key
        result = await self.rpc("auth", params)
        self.can_approve_tools = bool(result.get("can_approve_tools"))

    async def disconnect(self) -> None:
        """Close the WebSocket connection."""
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._fail_pending(click.ClickException("Connection closed"))

    async def rpc(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = _RPC_TIMEOUT,
    ) -> dict[str, Any]:
        """Send a JSON-RPC 2.0 request and return the result.

        ``timeout=None`` waits indefinitely (used by ``chat.send``).
        """
        if self._ws is None or self._ws.closed:
            raise click.ClickException("Not connected")

        req_id = uuid.uuid4().hex[:8]
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or {},
            "id": req_id,
        }
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict] = loop.create_future()
        self._pending[req_id] = future

        await self._ws.send_json(payload)

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            self._pending.pop(req_id, None)
            raise click.ClickException("Daemon request timed out")

    async def subscribe(self, patterns: list[str]) -> None:
        """Subscribe to event patterns on the daemon."""
        await self.rpc("events.subscribe", {"types": patterns})

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield event notifications from the subscription queue."""
        while True:
            event = await self._event_queue.get()
            yield event

    def _fail_pending(self, exc: Exception) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()

    async def _read_loop(self) -> None:
        """Read messages from the WebSocket and dispatch."""
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(data, dict):
                        continue

                    req_id = data.get("id")
                    if req_id is not None and req_id in self._pending:
                        future = self._pending.pop(req_id)
                        if not future.done():
                            error = data.get("error")
                            if error:
                                future.set_exception(
                                    RpcError(
                                        int(error.get("code", 0)),
                                        error.get("message", "RPC error"),
                                        error.get("data"),
                                    )
                                )
                            else:
                                future.set_result(data.get("result", {}))
                    elif data.get("method"):
                        try:
                            self._event_queue.put_nowait(data)
                        except asyncio.QueueFull:
                            logger.debug("cli.event_dropped", method=data.get("method"))
                elif msg.type in (
                    aiohttp.WSMsgType.ERROR,
                    aiohttp.WSMsgType.CLOSE,
                    aiohttp.WSMsgType.CLOSED,
                ):
                    break
        except aiohttp.ClientError as e:
            logger.debug("cli.read_failed", error=str(e))
        # The daemon went away; nothing pending will ever be answered.
        self._fail_pending(click.ClickException("Connection to daemon lost"))


def load_gateway_config() -> GatewayConfig:
    """Gateway settings from the environment, as the daemon reads them."""
    try:
        return GatewayConfig()
    except (ValidationError, ValueError) as e:
        raise click.ClickException(f"Configuration error: {e}") from e


def connect_args(config: GatewayConfig) -> tuple[str, int, str | None]:
    """Host, port and token to dial; a wildcard bind is reached over loopback."""
    host = config.host
    if host in ("0.0.0.0", "::", ""):
        host = "127.0.0.1"
    token = (config.auth_token or "").strip() or None
    return host, int(config.port), token
