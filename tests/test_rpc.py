"""Tests for vigil.rpc — JSON-RPC method routing."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from vigil.errors import SessionBusyError, SessionQuarantinedError
from vigil.harness.loop import LoopResult, RunOutcome
from vigil.memory.session_store import SessionStore
from vigil.rpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    SESSION_BUSY,
    SESSION_NOT_FOUND,
    SESSION_QUARANTINED,
    RequestRouter,
    make_error,
    make_notification,
    make_response,
)
from vigil.types import Role, Turn


def _ticket(result: LoopResult, position: int = 0) -> MagicMock:
    ticket = MagicMock()
    ticket.run_id = result.run_id
    ticket.position = position
    ticket.wait = AsyncMock(return_value=result)
    return ticket


@pytest.fixture
def daemon() -> MagicMock:
    d = MagicMock()
    d.main_session_key = "main"
    d.is_quarantined.return_value = False
    d.status.return_value = {"daemon": {"version": "test"}}
    return d


@pytest.fixture
def router(daemon: MagicMock, store: SessionStore) -> RequestRouter:
    return RequestRouter(daemon, store, active_connections_getter=lambda: 3)


class TestEnvelopes:
    def test_response_error_and_notification(self):
        assert make_response(1, {"ok": True}) == {"jsonrpc": "2.0", "id": 1, "result": {"ok": True}}
        err = make_error("a", INVALID_PARAMS, "bad", {"field": "text"})
        assert err["error"] == {"code": INVALID_PARAMS, "message": "bad", "data": {"field": "text"}}
        note = make_notification("event.run.finished", {"run_id": "r1"})
        assert "id" not in note


class TestDispatch:
    @pytest.mark.asyncio
    async def test_ping(self, router: RequestRouter):
        assert (await router.dispatch("ping", {}, 1))["result"] == {"status": "pong"}

    @pytest.mark.asyncio
    async def test_unknown_method(self, router: RequestRouter):
        resp = await router.dispatch("chat.explode", {}, 2)
        assert resp["error"]["code"] == METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_handler_crash_becomes_internal_error(self, router: RequestRouter, daemon: MagicMock):
        daemon.status.side_effect = RuntimeError("boom")
        resp = await router.dispatch("status", {}, 3)
        assert resp["error"]["code"] == INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_status_includes_connections(self, router: RequestRouter):
        resp = await router.dispatch("status", {}, 4)
        assert resp["result"]["active_connections"] == 3


class TestChatSend:
    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, router: RequestRouter, daemon: MagicMock):
        resp = await router.dispatch("chat.send", {"text": "   "}, 1)
        assert resp["error"]["code"] == INVALID_PARAMS
        daemon.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_waits_for_the_run(self, router: RequestRouter, daemon: MagicMock):
        result = LoopResult(run_id="run-1", session_key="main", reason=RunOutcome.COMPLETED, text="hi there")
        daemon.submit.return_value = _ticket(result)

        resp = await router.dispatch("chat.send", {"text": "hello"}, 1, session_key="main")

        event = daemon.submit.call_args.args[0]
        assert event.session_key == "main"
        assert event.source == "user"
        assert resp["result"]["text"] == "hi there"
        assert resp["result"]["reason"] == "completed"
        assert resp["result"]["delivered"] is True

    @pytest.mark.asyncio
    async def test_suppressed_reply_has_no_text(self, router: RequestRouter, daemon: MagicMock):
        result = LoopResult(run_id="run-2", session_key="main", reason=RunOutcome.NO_REPLY, text="NO_REPLY")
        daemon.submit.return_value = _ticket(result)
        resp = await router.dispatch("chat.send", {"text": "ok thanks"}, 1)
        assert resp["result"]["text"] == ""
        assert resp["result"]["delivered"] is False

    @pytest.mark.asyncio
    async def test_no_wait_returns_queue_position(self, router: RequestRouter, daemon: MagicMock):
        result = LoopResult(run_id="run-3", session_key="work", reason=RunOutcome.COMPLETED)
        ticket = _ticket(result, position=2)
        daemon.submit.return_value = ticket
        resp = await router.dispatch("chat.send", {"text": "later", "session_key": "work", "wait": False}, 1)
        assert resp["result"] == {"run_id": "run-3", "session_key": "work", "queued": True, "position": 2}
        ticket.wait.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_quarantined_session(self, router: RequestRouter, daemon: MagicMock):
        daemon.submit.side_effect = SessionQuarantinedError("quarantined")
        resp = await router.dispatch("chat.send", {"text": "hi"}, 1)
        assert resp["error"]["code"] == SESSION_QUARANTINED
        assert resp["error"]["data"] == {"session_key": "main"}

    @pytest.mark.asyncio
    async def test_busy_session(self, router: RequestRouter, daemon: MagicMock):
        daemon.submit.side_effect = SessionBusyError("full")
        resp = await router.dispatch("chat.send", {"text": "hi"}, 1)
        assert resp["error"]["code"] == SESSION_BUSY

    @pytest.mark.asyncio
    async def test_bad_session_key(self, router: RequestRouter):
        resp = await router.dispatch("chat.send", {"text": "hi", "session_key": "x" * 300}, 1)
        assert resp["error"]["code"] == INVALID_PARAMS


class TestChatCancel:
    @pytest.mark.asyncio
    async def test_cancel_by_run_id(self, router: RequestRouter, daemon: MagicMock):
        daemon.cancel_run.return_value = True
        resp = await router.dispatch("chat.cancel", {"run_id": "run-9"}, 1)
        assert resp["result"] == {"cancelled": True, "run_id": "run-9"}
        daemon.cancel_run.assert_called_once_with("run-9", reason="user_interrupt")

    @pytest.mark.asyncio
    async def test_cancel_by_session(self, router: RequestRouter, daemon: MagicMock):
        daemon.cancel_session.return_value = False
        resp = await router.dispatch("chat.cancel", {}, 1, session_key="work")
        assert resp["result"] == {"cancelled": False, "session_key": "work"}


class TestSessions:
    @pytest.mark.asyncio
    async def test_get_missing(self, router: RequestRouter):
        resp = await router.dispatch("sessions.get", {"session_key": "ghost"}, 1)
        assert resp["error"]["code"] == SESSION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_get_and_list(self, router: RequestRouter, store: SessionStore):
        await store.append("main", Turn(role=Role.USER, content="hello"))
        await store.append("main", Turn(role=Role.AGENT, content="hi"))

        got = await router.dispatch("sessions.get", {"tail": 1}, 1, session_key="main")
        assert got["result"]["active_turns"] == 2
        assert [t["content"] for t in got["result"]["turns"]] == ["hi"]

        listed = await router.dispatch("sessions.list", {}, 2)
        assert [s["key"] for s in listed["result"]["sessions"]] == ["main"]
        assert listed["result"]["sessions"][0]["quarantined"] is False

    @pytest.mark.asyncio
    async def test_delete_requires_explicit_key(self, router: RequestRouter, daemon: MagicMock):
        resp = await router.dispatch("sessions.delete", {}, 1, session_key="main")
        assert resp["error"]["code"] == INVALID_PARAMS
        daemon.delete_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete(self, router: RequestRouter, daemon: MagicMock):
        daemon.delete_session = AsyncMock(return_value=True)
        resp = await router.dispatch("sessions.delete", {"session_key": "main"}, 1)
        assert resp["result"] == {"deleted": True, "session_key": "main"}


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_calls_shutdown(self, daemon: MagicMock, tmp_path: Path):
        reasons: list[str] = []
        router = RequestRouter(daemon, SessionStore(tmp_path / "s", fsync=False), shutdown_callback=reasons.append)
        resp = await router.dispatch("stop", {}, 1)
        assert resp["result"] == {"status": "stopping"}
        assert reasons == ["rpc_stop_requested"]
