"""Tests for vigil/cli/ — Click-based CLI commands."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner
from rich.console import Console

from vigil.cli.app import async_cmd, cli
from vigil.cli.connection import DaemonNotRunning, RpcError, connect_args
from vigil.cli.formatters import build_table, format_duration, format_timestamp, status_indicator
from vigil.cli.monitoring import render_status, summarize_event
from vigil.config import GatewayConfig


def _connection(rpc_result: dict | None = None, *, connect_error: Exception | None = None) -> MagicMock:
    conn = MagicMock()
    conn.connect = AsyncMock(side_effect=connect_error)
    conn.disconnect = AsyncMock()
    conn.subscribe = AsyncMock()
    conn.rpc = AsyncMock(return_value=rpc_result or {})
    conn.can_approve_tools = False
    return conn


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class TestFormatters:
    def test_format_duration(self) -> None:
        assert format_duration(0) == "0s"
        assert format_duration(125) == "2m05s"
        assert format_duration(7200) == "2h 00m"

    def test_format_timestamp(self) -> None:
        assert format_timestamp(None) == "-"
        assert format_timestamp(0.0, now=60.0) == "1970-01-01 00:00:00 (1m00s ago)"
        assert format_timestamp(120.0, now=0.0).endswith("(in 2m00s)")

    def test_status_indicator(self) -> None:
        assert str(status_indicator("healthy")) == "> "
        assert str(status_indicator("exhausted")) == "x "
        assert str(status_indicator("whatever")) == "? "

    def test_build_table(self) -> None:
        table = build_table("Runs", ["A", "B"], [["1", 2]])
        assert table.title == "Runs"
        assert table.row_count == 1


class TestAsyncCmd:
    def test_wraps_async_function(self) -> None:
        async def my_func() -> int:
            return 42

        assert async_cmd(my_func)() == 42


class TestConnectArgs:
    def test_wildcard_bind_dials_loopback(self) -> None:
        config = GatewayConfig(_env_file=None, VIGIL_GATEWAY_HOST="0.0.0.0", VIGIL_GATEWAY_AUTH_TOKEN="tok")
        assert connect_args(config) == ("127.0.0.1", config.port, "tok")

    def test_blank_token_is_none(self) -> None:
        config = GatewayConfig(_env_file=None, VIGIL_GATEWAY_AUTH_TOKEN="  ")
        assert connect_args(config)[2] is None


# ---------------------------------------------------------------------------
# Command group
# ---------------------------------------------------------------------------


class TestCliGroup:
    def test_subcommands_registered(self) -> None:
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        for name in ("daemon", "stop", "status", "feed", "send", "session-delete"):
            assert name in result.output

    def test_no_subcommand_prints_help(self) -> None:
        result = CliRunner().invoke(cli, [])
        assert result.exit_code == 0
        assert "gateway daemon" in result.output


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


_STATUS = {
    "daemon": {"version": "0.1.0", "pid": 4242, "uptime": 65.0},
    "listener": {"host": "127.0.0.1", "port": 18900, "listening": True, "connections": 1},
    "profiles": {"profiles": [{"profile_id": "anthropic-primary", "provider": "anthropic", "health": "healthy"}]},
    "scheduler": {
        "timezone": "UTC",
        "jobs": [{"job_id": "heartbeat", "trigger": "every 1800s", "session_policy": "main", "run_count": 3}],
    },
    "runs": {"queues": {"main": 1}, "active": [{"session_key": "main", "run_id": "run-1", "state": "model"}]},
    "quarantined": {"broken": "disk full"},
    "sandbox": {"enabled": True, "live_containers": []},
}


class TestStatusCmd:
    def test_not_running(self) -> None:
        conn = _connection(connect_error=DaemonNotRunning())
        with patch("vigil.cli.connection.DaemonConnection", return_value=conn):
            result = CliRunner().invoke(cli, ["status"])
        assert result.exit_code == 1
        assert "not running" in result.output

    def test_not_running_json(self) -> None:
        conn = _connection(connect_error=DaemonNotRunning())
        with patch("vigil.cli.connection.DaemonConnection", return_value=conn):
            result = CliRunner().invoke(cli, ["status", "--json"])
        assert json.loads(result.output) == {"status": "not_running"}

    def test_json_output(self) -> None:
        conn = _connection(_STATUS)
        with patch("vigil.cli.connection.DaemonConnection", return_value=conn):
            result = CliRunner().invoke(cli, ["--json", "status"])
        assert result.exit_code == 0
        assert json.loads(result.output)["daemon"]["pid"] == 4242
        conn.rpc.assert_awaited_once_with("status")
        conn.disconnect.assert_awaited()

    def test_render_status(self) -> None:
        console = Console(record=True, width=160)
        render_status(console, _STATUS)
        text = console.export_text()
        assert "Vigil 0.1.0" in text
        assert "anthropic-primary" in text
        assert "heartbeat" in text
        assert "broken: disk full" in text
        assert "Sandbox: enabled" in text


# ---------------------------------------------------------------------------
# send / session-delete
# ---------------------------------------------------------------------------


class TestSendCmd:
    def test_no_wait_reports_position(self) -> None:
        conn = _connection({"run_id": "run-7", "session_key": "work", "queued": True, "position": 1})
        with patch("vigil.cli.chat.DaemonConnection", return_value=conn):
            result = CliRunner().invoke(cli, ["send", "hello", "--session", "work", "--no-wait"])
        assert result.exit_code == 0
        assert "Queued run run-7 on work (position 1)" in result.output
        conn.connect.assert_awaited_once_with(auth_token=None, approver=False)
        conn.rpc.assert_awaited_once_with(
            "chat.send", {"text": "hello", "wait": False, "session_key": "work"}, timeout=None
        )

    def test_json_reply(self) -> None:
        reply = {"run_id": "run-8", "session_key": "main", "reason": "completed", "text": "hi"}
        conn = _connection(reply)
        with patch("vigil.cli.chat.DaemonConnection", return_value=conn):
            result = CliRunner().invoke(cli, ["send", "hello", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.output) == reply
        conn.subscribe.assert_not_awaited()

    def test_failed_run_exits_nonzero(self) -> None:
        conn = _connection({"run_id": "run-9", "reason": "router_exhausted", "error": "all profiles cooling down"})
        with patch("vigil.cli.chat.DaemonConnection", return_value=conn):
            result = CliRunner().invoke(cli, ["send", "hello", "--no-approve"])
        assert result.exit_code == 1
        assert "router_exhausted: all profiles cooling down" in result.output

    def test_rpc_error_is_reported(self) -> None:
        conn = _connection()
        conn.rpc.side_effect = RpcError(-32003, "Session 'main' is quarantined")
        with patch("vigil.cli.chat.DaemonConnection", return_value=conn):
            result = CliRunner().invoke(cli, ["send", "hello", "--json"])
        assert result.exit_code == 1
        assert "quarantined (code -32003)" in result.output
        conn.disconnect.assert_awaited()


class TestSessionDeleteCmd:
    @pytest.mark.parametrize("deleted, expected", [(True, "Session main deleted."), (False, "No session named main.")])
    def test_delete(self, deleted: bool, expected: str) -> None:
        conn = _connection({"deleted": deleted, "session_key": "main"})
        with patch("vigil.cli.chat.DaemonConnection", return_value=conn):
            result = CliRunner().invoke(cli, ["session-delete", "main", "--yes"])
        assert result.exit_code == 0
        assert expected in result.output
        conn.rpc.assert_awaited_once_with("sessions.delete", {"session_key": "main"})


# ---------------------------------------------------------------------------
# feed
# ---------------------------------------------------------------------------


class TestFeed:
    def test_help(self) -> None:
        result = CliRunner().invoke(cli, ["feed", "--help"])
        assert result.exit_code == 0
        assert "--follow" in result.output
        assert "--type" in result.output

    def test_summaries(self) -> None:
        assert summarize_event(
            {"event_type": "run.finished", "session_key": "main", "run_id": "r1", "reason": "completed"}
        ) == "main run=r1 completed"
        assert summarize_event(
            {"event_type": "profile.health.changed", "profile_id": "p1", "health": "cooling_down"}
        ) == "p1 -> cooling_down"
        assert summarize_event({"event_type": "stream.chunk", "session_key": "main", "delta": "hi"}) == "main: 'hi'"
