"""
Request Router — transport-independent JSON-RPC dispatch.

The gateway owns connection state (auth, subscriptions, approvals) and hands
every other method to this router. Handlers talk to the daemon, which owns
the run queues, and to the session store for read/delete.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

import structlog

from vigil.errors import SessionBusyError, SessionQuarantinedError
from vigil.memory.session_store import SessionStore
from vigil.types import InboundEvent

if TYPE_CHECKING:
    from vigil.daemon import GatewayDaemon

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# JSON-RPC 2.0 helpers
# ---------------------------------------------------------------------------


def make_response(req_id: str | int | None, result: dict[str, Any]) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 success response."""
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def make_error(
    req_id: str | int | None,
    code: int,
    message: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 error response."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": req_id, "error": error}


def make_notification(method: str, params: dict[str, Any]) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 notification (no id, no response expected)."""
    return {"jsonrpc": "2.0", "method": method, "params": params}


# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Server-defined codes
UNAUTHORIZED = -32001
SESSION_BUSY = -32002
SESSION_QUARANTINED = -32003
SESSION_NOT_FOUND = -32004

_MAX_TEXT_CHARS = 200_000


class RequestRouter:
    """Routes JSON-RPC methods to the daemon.

    ``session_key`` is the connection's default conversation, set by ``auth``;
    a ``session_key`` param on a request overrides it.
    """

    def __init__(
        self,
        daemon: GatewayDaemon,
        session_store: SessionStore,
        *,
        shutdown_callback: Callable[[str], None] | None = None,
        active_connections_getter: Callable[[], int] | None = None,
    ) -> None:
        self._daemon = daemon
        self._session_store = session_store
        self._shutdown_callback = shutdown_callback
        self._get_active_connections = active_connections_getter or (lambda: 0)

    def set_active_connections_getter(self, getter: Callable[[], int]) -> None:
        self._get_active_connections = getter

    async def dispatch(
        self,
        method: str,
        params: dict[str, Any],
        req_id: str | int | None,
        session_key: str | None = None,
    ) -> dict[str, Any]:
        """Route a request to its handler; always returns a response dict."""
        try:
            handler = self._handlers.get(method)
            if handler is None:
                return make_error(req_id, METHOD_NOT_FOUND, f"unknown method: {method}")
            return await handler(self, params, req_id, session_key)
        except Exception as e:
            logger.error("rpc.dispatch_error", method=method, error=str(e), exc_info=True)
            return make_error(req_id, INTERNAL_ERROR, "internal error")

    def _session_key(self, params: dict[str, Any], session_key: str | None) -> str:
        key = params.get("session_key") or session_key or self._daemon.main_session_key
        if not isinstance(key, str):
            raise ValueError("session_key must be a string")
        return SessionStore.validate_key(key)

    # ------------------------------------------------------------------
    # RPC method handlers
    # ------------------------------------------------------------------

    async def _handle_ping(
        self,
        params: dict[str, Any],
        req_id: str | int | None,
        session_key: str | None,
    ) -> dict[str, Any]:
        return make_response(req_id, {"status": "pong"})

    async def _handle_chat_send(
        self,
        params: dict[str, Any],
        req_id: str | int | None,
        session_key: str | None,
    ) -> dict[str, Any]:
        text = params.get("text", "")
        if not isinstance(text, str) or not text.strip():
            return make_error(req_id, INVALID_PARAMS, "empty text")
        if len(text) > _MAX_TEXT_CHARS:
            return make_error(req_id, INVALID_PARAMS, f"text longer than {_MAX_TEXT_CHARS} characters")
        try:
            key = self._session_key(params, session_key)
        except ValueError as e:
            return make_error(req_id, INVALID_PARAMS, str(e))
        agent_id = params.get("agent_id")
        if agent_id is not None and not isinstance(agent_id, str):
            return make_error(req_id, INVALID_PARAMS, "agent_id must be a string")

        event = InboundEvent(
            session_key=key,
            text=text,
            source="user",
            agent_id=agent_id,
            channel=str(params.get("channel") or "gateway"),
        )
        try:
            ticket = self._daemon.submit(event)
        except SessionQuarantinedError as e:
            return make_error(req_id, SESSION_QUARANTINED, str(e), {"session_key": key})
        except SessionBusyError as e:
            return make_error(req_id, SESSION_BUSY, str(e), {"session_key": key})

        if params.get("wait", True) is False:
            return make_response(req_id, {
                "run_id": ticket.run_id,
                "session_key": key,
                "queued": True,
                "position": ticket.position,
            })

        result = await ticket.wait()
        return make_response(req_id, {
            "run_id": result.run_id,
            "session_key": key,
            "reason": result.reason.value,
            "text": result.text if result.deliverable else "",
            "delivered": result.deliverable,
            "model_calls": result.model_calls,
            "tool_calls": result.tool_calls,
            "error": result.error,
        })

    async def _handle_chat_cancel(
        self,
        params: dict[str, Any],
        req_id: str | int | None,
        session_key: str | None,
    ) -> dict[str, Any]:
        run_id = params.get("run_id")
        if isinstance(run_id, str) and run_id:
            cancelled = self._daemon.cancel_run(run_id, reason="user_interrupt")
            return make_response(req_id, {"cancelled": cancelled, "run_id": run_id})
        try:
            key = self._session_key(params, session_key)
        except ValueError as e:
            return make_error(req_id, INVALID_PARAMS, str(e))
        cancelled = self._daemon.cancel_session(key, reason="user_interrupt")
        return make_response(req_id, {"cancelled": cancelled, "session_key": key})

    async def _handle_status(
        self,
        params: dict[str, Any],
        req_id: str | int | None,
        session_key: str | None,
    ) -> dict[str, Any]:
        status = self._daemon.status()
        status["active_connections"] = self._get_active_connections()
        return make_response(req_id, status)

    async def _handle_sessions_list(
        self,
        params: dict[str, Any],
        req_id: str | int | None,
        session_key: str | None,
    ) -> dict[str, Any]:
        limit = params.get("limit", 50)
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            return make_error(req_id, INVALID_PARAMS, "limit must be a positive integer")
        sessions = self._session_store.list_sessions(limit=min(limit, 1000))
        for entry in sessions:
            entry["quarantined"] = self._daemon.is_quarantined(entry.get("key", ""))
        return make_response(req_id, {"sessions": sessions})

    async def _handle_sessions_get(
        self,
        params: dict[str, Any],
        req_id: str | int | None,
        session_key: str | None,
    ) -> dict[str, Any]:
        try:
            key = self._session_key(params, session_key)
        except ValueError as e:
            return make_error(req_id, INVALID_PARAMS, str(e))
        session = await self._session_store.get(key)
        if session is None:
            return make_error(req_id, SESSION_NOT_FOUND, "session not found", {"session_key": key})
        tail = params.get("tail", 50)
        if not isinstance(tail, int) or isinstance(tail, bool) or tail < 0:
            return make_error(req_id, INVALID_PARAMS, "tail must be a non-negative integer")
        turns = session.turns[-tail:] if tail else []
        return make_response(req_id, {
            "key": session.key,
            "state": session.state,
            "compaction_marker": session.compaction_marker,
            "summary": session.summary.content if session.summary is not None else None,
            "total_turns": session.total_turns,
            "active_turns": len(session.turns),
            "turns": [t.model_dump(mode="json") for t in turns],
            "quarantined": self._daemon.is_quarantined(key),
        })

    async def _handle_sessions_delete(
        self,
        params: dict[str, Any],
        req_id: str | int | None,
        session_key: str | None,
    ) -> dict[str, Any]:
        key = params.get("session_key")
        if not isinstance(key, str) or not key.strip():
            # Deletion never falls back to the connection's default session.
            return make_error(req_id, INVALID_PARAMS, "session_key required")
        try:
            deleted = await self._daemon.delete_session(key)
        except ValueError as e:
            return make_error(req_id, INVALID_PARAMS, str(e))
        return make_response(req_id, {"deleted": deleted, "session_key": key})

    async def _handle_stop(
        self,
        params: dict[str, Any],
        req_id: str | int | None,
        session_key: str | None,
    ) -> dict[str, Any]:
        logger.info("rpc.stop_requested")
        if self._shutdown_callback:
            self._shutdown_callback("rpc_stop_requested")
        return make_response(req_id, {"status": "stopping"})

    # ------------------------------------------------------------------
    # Handler registry
    # ------------------------------------------------------------------

    _handlers: dict[str, Any] = {
        "ping": _handle_ping,
        "chat.send": _handle_chat_send,
        "chat.cancel": _handle_chat_cancel,
        "status": _handle_status,
        "sessions.list": _handle_sessions_list,
        "sessions.get": _handle_sessions_get,
        "sessions.delete": _handle_sessions_delete,
        "stop": _handle_stop,
    }
