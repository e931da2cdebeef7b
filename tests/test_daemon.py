"""Tests for vigil.daemon — run queues, quarantine, cancellation and lifecycle."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest

from vigil.api.providers import ModelRequest, ModelResponse
from vigil.config import VigilConfig
from vigil.daemon import GatewayDaemon
from vigil.errors import (
    GatewayAddressInUseError,
    SessionBusyError,
    SessionPersistenceError,
    SessionQuarantinedError,
)
from vigil.events import VigilEvent
from vigil.harness.loop import RunOutcome
from vigil.types import InboundEvent, TurnKind

from conftest import ScriptedProvider, reply


@pytest.fixture
def daemon_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("VIGIL_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("VIGIL_WORKSPACE_DIR", str(tmp_path / "workspace"))
    monkeypatch.setenv("VIGIL_GATEWAY_PORT", "0")
    monkeypatch.setenv("VIGIL_HEARTBEAT_ENABLED", "false")
    monkeypatch.setenv("VIGIL_SANDBOX_ENABLED", "false")
    monkeypatch.setenv("VIGIL_SESSION_FSYNC", "false")
    monkeypatch.setenv("VIGIL_RETRY_MAX_RETRIES", "0")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.delenv("VIGIL_GATEWAY_AUTH_TOKEN", raising=False)
    return tmp_path


def _daemon(provider: ScriptedProvider) -> GatewayDaemon:
    return GatewayDaemon(VigilConfig(), providers={"anthropic": provider})


def _event(key: str = "main", text: str = "hi") -> InboundEvent:
    return InboundEvent(session_key=key, text=text)


class _Concurrency:
    """Provider step that records how many model calls overlap."""

    def __init__(self, delay: float = 0.05) -> None:
        self.delay = delay
        self.active = 0
        self.peak = 0

    async def __call__(self, request: ModelRequest) -> ModelResponse:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return reply("ok")


class _Hang:
    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, request: ModelRequest) -> ModelResponse:
        self.entered.set()
        await self.release.wait()
        return reply("finally")


class TestSerialization:
    @pytest.mark.asyncio
    async def test_same_session_runs_one_at_a_time(self, daemon_env: Path) -> None:
        step = _Concurrency()
        daemon = _daemon(ScriptedProvider([step]))
        try:
            tickets = [daemon.submit(_event("main", f"msg {i}")) for i in range(3)]
            assert [t.position for t in tickets] == [0, 1, 2]
            results = await asyncio.gather(*(t.wait() for t in tickets))
            assert all(r.reason is RunOutcome.COMPLETED for r in results)
            assert step.peak == 1

            session = await daemon.store.load_or_create("main")
            user_turns = [t.content for t in session.turns if t.role.value == "user"]
            assert user_turns == ["msg 0", "msg 1", "msg 2"]
        finally:
            await daemon.queue.shutdown()

    @pytest.mark.asyncio
    async def test_different_sessions_run_in_parallel(self, daemon_env: Path) -> None:
        step = _Concurrency()
        daemon = _daemon(ScriptedProvider([step]))
        try:
            tickets = [daemon.submit(_event("alpha")), daemon.submit(_event("beta"))]
            await asyncio.gather(*(t.wait() for t in tickets))
            assert step.peak == 2
        finally:
            await daemon.queue.shutdown()

    @pytest.mark.asyncio
    async def test_queue_limit_rejects_without_queueing(
        self, daemon_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("VIGIL_MAX_QUEUED_RUNS_PER_SESSION", "1")
        hang = _Hang()
        daemon = _daemon(ScriptedProvider([hang]))
        try:
            running = daemon.submit(_event())
            await asyncio.wait_for(hang.entered.wait(), timeout=2.0)
            waiting = daemon.submit(_event())
            with pytest.raises(SessionBusyError):
                daemon.submit(_event())
            assert daemon.queue.depths() == {"main": 2}

            hang.release.set()
            assert (await running.wait()).reason is RunOutcome.COMPLETED
            assert (await waiting.wait()).reason is RunOutcome.COMPLETED
        finally:
            await daemon.queue.shutdown()


class TestQuarantine:
    @pytest.mark.asyncio
    async def test_persistence_failure_quarantines_until_deleted(self, daemon_env: Path) -> None:
        daemon = _daemon(ScriptedProvider([reply("ok")]))
        try:
            failing = patch.object(
                daemon.store, "_append_record", side_effect=SessionPersistenceError("disk full"),
            )
            with failing:
                result = await daemon.submit(_event()).wait()
            assert result.reason is RunOutcome.PERSISTENCE_FAILED
            assert daemon.is_quarantined("main")
            assert "main" in daemon.status()["quarantined"]

            with pytest.raises(SessionQuarantinedError):
                daemon.submit(_event())
            assert (await daemon.submit(_event("other")).wait()).reason is RunOutcome.COMPLETED

            assert await daemon.delete_session("main") is True
            assert not daemon.is_quarantined("main")
            assert (await daemon.submit(_event()).wait()).reason is RunOutcome.COMPLETED
        finally:
            await daemon.queue.shutdown()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_run_records_abort(self, daemon_env: Path) -> None:
        hang = _Hang()
        daemon = _daemon(ScriptedProvider([hang]))
        try:
            ticket = daemon.submit(_event("main", "long task"))
            await asyncio.wait_for(hang.entered.wait(), timeout=2.0)

            assert daemon.cancel_run(ticket.run_id) is True
            result = await asyncio.wait_for(ticket.wait(), timeout=2.0)
            assert result.reason is RunOutcome.CANCELLED
            assert result.error == "user_interrupt"

            session = await daemon.store.load_or_create("main")
            assert session.turns[-1].kind is TurnKind.ABORTED
            assert daemon.cancel_run(ticket.run_id) is False
        finally:
            await daemon.queue.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_session_drops_waiting_runs(self, daemon_env: Path) -> None:
        hang = _Hang()
        daemon = _daemon(ScriptedProvider([hang]))
        try:
            first = daemon.submit(_event())
            await asyncio.wait_for(hang.entered.wait(), timeout=2.0)
            second = daemon.submit(_event())

            assert daemon.cancel_session("main") is True
            assert (await second.wait()).reason is RunOutcome.CANCELLED
            assert (await first.wait()).reason is RunOutcome.CANCELLED
        finally:
            await daemon.queue.shutdown()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_second_daemon_cannot_bind(self, daemon_env: Path) -> None:
        first = _daemon(ScriptedProvider([reply("ok")]))
        running = asyncio.create_task(first.run())
        for _ in range(100):
            if first.gateway.is_listening:
                break
            await asyncio.sleep(0.02)
        assert first.gateway.is_listening

        config = VigilConfig()
        config.gateway.port = first.gateway.port
        second = GatewayDaemon(config, providers={"anthropic": ScriptedProvider([reply("ok")])})
        with pytest.raises(GatewayAddressInUseError):
            await second.run()

        first._request_shutdown("test")
        assert await asyncio.wait_for(running, timeout=5.0) == 0
        assert not first.gateway.is_listening

    @pytest.mark.asyncio
    async def test_status_shape(self, daemon_env: Path) -> None:
        daemon = _daemon(ScriptedProvider([reply("ok")]))
        status = daemon.status()
        assert set(status) >= {"daemon", "listener", "profiles", "scheduler", "runs", "quarantined", "sandbox"}
        assert status["sandbox"]["enabled"] is False
        assert "sk-test" not in str(status)


class TestScheduledRuns:
    @staticmethod
    def _with_checklist(daemon: GatewayDaemon) -> None:
        daemon.workspace.ensure_layout()
        daemon.workspace.write("heartbeat", "- anything overdue?", actor="operator")

    @pytest.mark.asyncio
    async def test_heartbeat_ok_is_kept_but_never_sent(
        self, daemon_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("VIGIL_HEARTBEAT_ENABLED", "true")
        daemon = _daemon(ScriptedProvider([reply("HEARTBEAT_OK")]))
        self._with_checklist(daemon)
        outbound: list[VigilEvent] = []
        finished: list[VigilEvent] = []
        daemon.event_bus.subscribe("outbound.*", outbound.append)
        daemon.event_bus.subscribe("run.finished", finished.append)
        await daemon.event_bus.start()
        try:
            result = await daemon.scheduler.trigger("heartbeat")
        finally:
            await daemon.event_bus.stop()
            await daemon.queue.shutdown()

        assert result is not None
        assert result.reason is RunOutcome.NO_REPLY
        assert outbound == []
        assert [e.delivered for e in finished] == [False]

        session = await daemon.store.load_or_create("main")
        assert [t.kind for t in session.turns] == [TurnKind.HEARTBEAT, TurnKind.MESSAGE]
        assert session.turns[-1].content == "HEARTBEAT_OK"
        assert session.turns[-1].suppressed is True

    @pytest.mark.asyncio
    async def test_heartbeat_with_news_is_announced(
        self, daemon_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("VIGIL_HEARTBEAT_ENABLED", "true")
        daemon = _daemon(ScriptedProvider([reply("The invoice is due tomorrow.")]))
        self._with_checklist(daemon)
        outbound: list[VigilEvent] = []
        daemon.event_bus.subscribe("outbound.*", outbound.append)
        await daemon.event_bus.start()
        try:
            await daemon.scheduler.trigger("heartbeat")
        finally:
            await daemon.event_bus.stop()
            await daemon.queue.shutdown()

        assert [(e.session_key, e.text) for e in outbound] == [("main", "The invoice is due tomorrow.")]

    @pytest.mark.asyncio
    async def test_isolated_cron_leaves_the_main_session_alone(
        self, daemon_env: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv(
            "VIGIL_CRON_JOBS",
            '[{"job_id": "digest", "cron": "0 9 * * *", "prompt": "Write the daily digest."}]',
        )
        daemon = _daemon(ScriptedProvider([reply("Digest: nothing new.")]))
        outbound: list[VigilEvent] = []
        daemon.event_bus.subscribe("outbound.*", outbound.append)
        await daemon.event_bus.start()
        try:
            await daemon.submit(_event("main", "morning")).wait()
            before = (await daemon.store.load_or_create("main")).total_turns

            result = await daemon.scheduler.trigger("digest")
        finally:
            await daemon.event_bus.stop()
            await daemon.queue.shutdown()

        assert result is not None
        assert result.reason is RunOutcome.COMPLETED
        assert result.session_key.startswith("cron:digest:")
        assert (await daemon.store.load_or_create("main")).total_turns == before

        isolated = await daemon.store.get(result.session_key)
        assert isolated is not None
        assert [t.kind for t in isolated.turns] == [TurnKind.CRON, TurnKind.MESSAGE]
        assert isolated.turns[0].content == "Write the daily digest."
        assert [e.session_key for e in outbound] == ["main", result.session_key]
