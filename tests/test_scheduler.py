"""Tests for vigil.scheduler — heartbeat and cron firing."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from zoneinfo import ZoneInfo

from vigil.config import SchedulerConfig
from vigil.harness.loop import LoopResult, RunOutcome
from vigil.scheduler import (
    HEARTBEAT_JOB_ID,
    Scheduler,
    next_cron_fire,
    parse_active_hours,
    within_active_hours,
)
from vigil.types import InboundEvent, ScheduledJob
from vigil.workspace import WorkspaceContract

_T0 = datetime(2026, 1, 1, 8, 0, 30, tzinfo=timezone.utc).timestamp()


class _Clock:
    def __init__(self, now: float = _T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _ok(event: InboundEvent) -> LoopResult:
    return LoopResult(run_id="run-1", session_key=event.session_key, reason=RunOutcome.COMPLETED, text="done")


def _cron_job(job_id: str = "digest", cron: str = "0 9 * * *", **extra) -> ScheduledJob:
    return ScheduledJob(job_id=job_id, kind="cron", cron=cron, session_policy="isolated", prompt="Summarize", **extra)


class TestActiveHours:
    def test_empty_window_is_always_active(self) -> None:
        assert within_active_hours("", datetime(2026, 1, 1, 3, 0))

    def test_plain_window(self) -> None:
        assert within_active_hours("09:00-17:00", datetime(2026, 1, 1, 9, 0))
        assert not within_active_hours("09:00-17:00", datetime(2026, 1, 1, 17, 0))

    def test_window_wrapping_midnight(self) -> None:
        assert within_active_hours("22:00-06:00", datetime(2026, 1, 1, 23, 30))
        assert within_active_hours("22:00-06:00", datetime(2026, 1, 1, 5, 59))
        assert not within_active_hours("22:00-06:00", datetime(2026, 1, 1, 12, 0))

    @pytest.mark.parametrize("window", ["9-17", "25:00-26:00", "09:61-10:00"])
    def test_malformed_window(self, window: str) -> None:
        with pytest.raises(ValueError):
            parse_active_hours(window)


class TestCronMath:
    def test_next_fire_in_timezone(self) -> None:
        fire = next_cron_fire("0 9 * * *", ZoneInfo("Europe/Oslo"), _T0)
        # 09:00 in Oslo (UTC+1 in January) is 08:00 UTC, already past; next is tomorrow.
        assert datetime.fromtimestamp(fire, tz=timezone.utc) == datetime(2026, 1, 2, 8, 0, tzinfo=timezone.utc)

    def test_next_fire_is_strictly_later(self) -> None:
        on_the_minute = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc).timestamp()
        assert next_cron_fire("0 9 * * *", ZoneInfo("UTC"), on_the_minute) > on_the_minute


class TestJobTable:
    def test_invalid_cron_is_rejected(self, workspace: WorkspaceContract, scheduler_config: SchedulerConfig) -> None:
        scheduler = Scheduler(scheduler_config, workspace, AsyncMock(), clock=_Clock())
        with pytest.raises(ValueError):
            scheduler.add_job(_cron_job(cron="every tuesday"))

    def test_duplicate_job_id(self, workspace: WorkspaceContract, scheduler_config: SchedulerConfig) -> None:
        scheduler = Scheduler(scheduler_config, workspace, AsyncMock(), clock=_Clock())
        scheduler.add_job(_cron_job())
        with pytest.raises(ValueError):
            scheduler.add_job(_cron_job())

    def test_jobs_from_config_skip_bad_entries(self, workspace: WorkspaceContract) -> None:
        config = SchedulerConfig(
            _env_file=None,
            VIGIL_HEARTBEAT_ENABLED=True,
            VIGIL_CRON_JOBS=json.dumps([
                {"id": "digest", "cron": "0 9 * * *", "prompt": "Morning digest"},
                {"id": "broken", "cron": "not a cron"},
            ]),
        )
        scheduler = Scheduler(config, workspace, AsyncMock(), clock=_Clock())
        assert sorted(j.job_id for j in scheduler.jobs()) == ["digest", HEARTBEAT_JOB_ID]
        digest = scheduler.get_job("digest")
        assert digest.session_policy == "isolated"
        assert digest.next_fire_at == datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc).timestamp()


class TestFiring:
    @pytest.mark.asyncio
    async def test_isolated_cron_runs_get_distinct_sessions(
        self, workspace: WorkspaceContract, scheduler_config: SchedulerConfig
    ) -> None:
        submit = AsyncMock(side_effect=_ok)
        scheduler = Scheduler(scheduler_config, workspace, submit, clock=_Clock())
        scheduler.add_job(_cron_job(agent_id="reporter"))

        await scheduler.trigger("digest")
        await scheduler.trigger("digest")

        keys = [call.args[0].session_key for call in submit.await_args_list]
        assert len(set(keys)) == 2
        assert all(key.startswith("cron:digest:") for key in keys)
        first = submit.await_args_list[0].args[0]
        assert first.source == "cron"
        assert first.agent_id == "reporter"
        assert scheduler.get_job("digest").run_count == 2

    @pytest.mark.asyncio
    async def test_main_policy_uses_main_session(
        self, workspace: WorkspaceContract, scheduler_config: SchedulerConfig
    ) -> None:
        submit = AsyncMock(side_effect=_ok)
        scheduler = Scheduler(scheduler_config, workspace, submit, main_session_key="home", clock=_Clock())
        scheduler.add_job(ScheduledJob(job_id="nudge", kind="cron", cron="*/5 * * * *", session_policy="main"))
        await scheduler.trigger("nudge")
        assert submit.await_args.args[0].session_key == "home"

    @pytest.mark.asyncio
    async def test_empty_heartbeat_checklist_skips_the_run(self, workspace: WorkspaceContract) -> None:
        config = SchedulerConfig(_env_file=None, VIGIL_HEARTBEAT_ENABLED=True)
        submit = AsyncMock(side_effect=_ok)
        scheduler = Scheduler(config, workspace, submit, clock=_Clock())

        assert await scheduler.trigger(HEARTBEAT_JOB_ID) is None
        submit.assert_not_awaited()
        assert scheduler.get_job(HEARTBEAT_JOB_ID).last_status == "skipped"

        workspace.write("heartbeat", "- check the build", actor="operator")
        await scheduler.trigger(HEARTBEAT_JOB_ID)
        event = submit.await_args.args[0]
        assert event.source == "heartbeat"
        assert event.session_key == "main"
        assert "check the build" in event.text

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_job_stays_scheduled(
        self, workspace: WorkspaceContract, scheduler_config: SchedulerConfig
    ) -> None:
        submit = AsyncMock(side_effect=RuntimeError("queue closed"))
        scheduler = Scheduler(scheduler_config, workspace, submit, clock=_Clock())
        job = scheduler.add_job(_cron_job())

        assert await scheduler.trigger("digest") is None
        assert job.last_status == "failed"
        assert "queue closed" in (job.last_error or "")
        assert job.enabled
        assert job.next_fire_at is not None

        submit.side_effect = None
        submit.return_value = LoopResult(
            run_id="run-2", session_key="x", reason=RunOutcome.ROUTER_EXHAUSTED, error="all profiles cooling down",
        )
        await scheduler.trigger("digest")
        assert job.last_status == "failed"
        assert job.last_error == "all profiles cooling down"

    @pytest.mark.asyncio
    async def test_tick_skips_a_job_still_running(
        self, workspace: WorkspaceContract, scheduler_config: SchedulerConfig
    ) -> None:
        release = asyncio.Event()

        async def _slow(event: InboundEvent) -> LoopResult:
            await release.wait()
            return _ok(event)

        clock = _Clock()
        scheduler = Scheduler(scheduler_config, workspace, _slow, clock=clock)
        job = scheduler.add_job(_cron_job(job_id="minutely", cron="* * * * *"))

        assert await scheduler.tick() == []
        clock.now = job.next_fire_at
        assert await scheduler.tick() == ["minutely"]
        await asyncio.sleep(0)
        clock.now += 60
        assert await scheduler.tick() == []
        assert job.last_status == "skipped"
        assert job.run_count == 1

        release.set()
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_tick_respects_active_hours(
        self, workspace: WorkspaceContract, scheduler_config: SchedulerConfig
    ) -> None:
        submit = AsyncMock(side_effect=_ok)
        clock = _Clock()
        scheduler = Scheduler(scheduler_config, workspace, submit, clock=clock)
        job = scheduler.add_job(_cron_job(job_id="office", cron="* * * * *", active_hours="10:00-18:00"))

        clock.now = job.next_fire_at
        assert await scheduler.tick() == []
        assert job.last_status == "skipped"
        submit.assert_not_awaited()
        assert job.next_fire_at > clock.now
