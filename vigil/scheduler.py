"""
Scheduler — wakes the agent without a user message.

Two kinds of job:

  HEARTBEAT fires on a fixed interval into the main session. The prompt
  carries the owner's HEARTBEAT.md checklist; the agent either surfaces
  something or answers HEARTBEAT_OK, which the loop suppresses.

  CRON fires on a croniter expression in the job's timezone. Each firing
  gets a fresh isolated session (``cron:<job_id>:<stamp>``) unless the job
  asks for the main session, and may name its own agent_id so it runs
  against a different fallback chain.

A firing only produces an InboundEvent and hands it to the daemon; the run
itself is queued behind anything already running for that session. A job
that fails is recorded and waits for its next natural trigger. A job still
running when it comes due again is skipped for that slot.
"""

from __future__ import annotations

import asyncio
import re
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from croniter import croniter
from pydantic import ValidationError

from vigil.config import SchedulerConfig
from vigil.events import EventBus, SchedulerJobFailedEvent, SchedulerJobFiredEvent
from vigil.harness.loop import HEARTBEAT_OK, LoopResult, RunOutcome
from vigil.types import InboundEvent, ScheduledJob
from vigil.workspace import WorkspaceContract

logger = structlog.get_logger(__name__)

HEARTBEAT_JOB_ID = "heartbeat"

HEARTBEAT_PROMPT = (
    "[Heartbeat] This is a scheduled check-in, not a message from anyone. "
    "Go through the checklist from HEARTBEAT.md below. If something there "
    "needs the owner's attention, say so briefly. Otherwise reply with "
    f"exactly {HEARTBEAT_OK}.\n\n{{checklist}}"
)

_FAILED_OUTCOMES = frozenset({
    RunOutcome.ROUTER_EXHAUSTED,
    RunOutcome.PROVIDER_ERROR,
    RunOutcome.PERSISTENCE_FAILED,
    RunOutcome.CONTEXT_OVERFLOW,
    RunOutcome.CANCELLED,
    RunOutcome.INTERNAL_ERROR,
})

_ACTIVE_HOURS_RE = re.compile(r"^(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})$")

SubmitFn = Callable[[InboundEvent], Awaitable[LoopResult]]


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("scheduler.unknown_timezone", timezone=name, fallback="UTC")
        return ZoneInfo("UTC")


def parse_active_hours(window: str) -> Optional[tuple[int, int]]:
    """"HH:MM-HH:MM" → (start_minute, end_minute); None means always active."""
    if not window:
        return None
    match = _ACTIVE_HOURS_RE.match(window.strip())
    if match is None:
        raise ValueError(f"active_hours must look like HH:MM-HH:MM, got {window!r}")
    sh, sm, eh, em = (int(g) for g in match.groups())
    if sh > 24 or eh > 24 or sm > 59 or em > 59:
        raise ValueError(f"active_hours out of range: {window!r}")
    return sh * 60 + sm, eh * 60 + em


def within_active_hours(window: str, when: datetime) -> bool:
    bounds = parse_active_hours(window)
    if bounds is None:
        return True
    start, end = bounds
    minute = when.hour * 60 + when.minute
    if start == end:
        return True
    if start < end:
        return start <= minute < end
    # Window wraps past midnight, e.g. 22:00-06:00.
    return minute >= start or minute < end


def next_cron_fire(expr: str, tz: ZoneInfo, now: float) -> float:
    now_dt = datetime.fromtimestamp(now, tz=timezone.utc).astimezone(tz)
    next_dt = croniter(expr, now_dt).get_next(datetime)
    fire_at = next_dt.timestamp()
    if fire_at <= now:
        # Same-second edge: step past it and ask again.
        later = datetime.fromtimestamp(int(now) + 1, tz=timezone.utc).astimezone(tz)
        fire_at = croniter(expr, later).get_next(datetime).timestamp()
    return fire_at


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class Scheduler:
    """Owns the job table and the tick loop."""

    def __init__(
        self,
        config: SchedulerConfig,
        workspace: WorkspaceContract,
        submit: SubmitFn,
        *,
        main_session_key: str = "main",
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._workspace = workspace
        self._submit = submit
        self._main_session_key = main_session_key
        self._event_bus = event_bus
        self._clock = clock
        self._tz = resolve_timezone(config.timezone)

        self._jobs: dict[str, ScheduledJob] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._tick_failures = 0

        self._load_jobs()

    # ------------------------------------------------------------------
    # Job table
    # ------------------------------------------------------------------

    def _load_jobs(self) -> None:
        now = self._clock()
        if self._config.heartbeat_enabled:
            self.add_job(ScheduledJob(
                job_id=HEARTBEAT_JOB_ID,
                kind="heartbeat",
                interval_seconds=self._config.heartbeat_interval,
                timezone=self._config.timezone,
                session_policy="main",
                active_hours=self._config.heartbeat_active_hours,
                agent_id=self._config.heartbeat_agent_id or None,
                delivery="announce",
            ), now=now)

        for raw in self._config.get_cron_jobs():
            data = dict(raw)
            data.setdefault("job_id", data.pop("id", None))
            data.setdefault("kind", "cron")
            data.setdefault("session_policy", "isolated")
            data.setdefault("timezone", self._config.timezone)
            try:
                job = ScheduledJob.model_validate(data)
            except ValidationError as e:
                logger.error("scheduler.invalid_job", job=raw, error=str(e))
                continue
            try:
                self.add_job(job, now=now)
            except ValueError as e:
                logger.error("scheduler.invalid_job", job_id=job.job_id, error=str(e))

    def add_job(self, job: ScheduledJob, *, now: Optional[float] = None) -> ScheduledJob:
        """Validate a job's trigger and schedule its first firing."""
        if job.kind == "cron":
            if not job.cron or not croniter.is_valid(job.cron):
                raise ValueError(f"invalid cron expression: {job.cron!r}")
        elif not job.interval_seconds or job.interval_seconds <= 0:
            raise ValueError("heartbeat jobs need a positive interval_seconds")
        parse_active_hours(job.active_hours)
        if job.job_id in self._jobs:
            raise ValueError(f"duplicate job_id: {job.job_id}")

        job.next_fire_at = self._next_fire(job, self._clock() if now is None else now)
        self._jobs[job.job_id] = job
        logger.info(
            "scheduler.job_added",
            job_id=job.job_id,
            kind=job.kind,
            next_fire_at=_iso(job.next_fire_at),
        )
        return job

    def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        return self._jobs.get(job_id)

    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())

    def _job_tz(self, job: ScheduledJob) -> ZoneInfo:
        if job.timezone == self._config.timezone:
            return self._tz
        return resolve_timezone(job.timezone)

    def _next_fire(self, job: ScheduledJob, now: float) -> float:
        if job.kind == "cron":
            return next_cron_fire(job.cron or "", self._job_tz(job), now)
        return now + float(job.interval_seconds or self._config.heartbeat_interval)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("scheduler.already_running")
            return
        self._running = True
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._loop(), name="scheduler-loop")
        logger.info("scheduler.started", jobs=len(self._jobs), timezone=str(self._tz))

    async def stop(self) -> None:
        self._running = False
        self._shutdown_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        inflight = list(self._inflight.values())
        for task in inflight:
            task.cancel()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)
        self._inflight.clear()
        logger.info("scheduler.stopped")

    async def _loop(self) -> None:
        while self._running and not self._shutdown_event.is_set():
            try:
                await self.tick()
                self._tick_failures = 0
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._tick_failures += 1
                logger.error(
                    "scheduler.tick_failed",
                    error=str(e),
                    consecutive=self._tick_failures,
                    exc_info=True,
                )

            # Shutdown-aware sleep
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self._config.tick_seconds
                )
                break
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def tick(self) -> list[str]:
        """Start every due job; returns the ids that were started."""
        now = self._clock()
        started: list[str] = []
        for job in list(self._jobs.values()):
            if not job.enabled or job.next_fire_at is None or job.next_fire_at > now:
                continue
            job.next_fire_at = self._next_fire(job, now)

            if job.job_id in self._inflight:
                job.last_status = "skipped"
                logger.info("scheduler.job_skipped_busy", job_id=job.job_id)
                continue
            local_now = datetime.fromtimestamp(now, tz=timezone.utc).astimezone(self._job_tz(job))
            if not within_active_hours(job.active_hours, local_now):
                job.last_status = "skipped"
                logger.debug("scheduler.outside_active_hours", job_id=job.job_id, window=job.active_hours)
                continue

            task = asyncio.create_task(self._fire(job, now), name=f"scheduler-{job.job_id}")
            self._inflight[job.job_id] = task
            task.add_done_callback(lambda _t, job_id=job.job_id: self._inflight.pop(job_id, None))
            started.append(job.job_id)
        return started

    async def trigger(self, job_id: str) -> Optional[LoopResult]:
        """Fire a job now, outside its schedule, and wait for the run."""
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return await self._fire(job, self._clock())

    def build_event(self, job: ScheduledJob, now: float) -> Optional[InboundEvent]:
        """The InboundEvent a firing submits, or None when there is nothing to do."""
        if job.kind == "heartbeat":
            checklist = self._workspace.read("heartbeat").strip()
            if not checklist:
                return None
            text = job.prompt or HEARTBEAT_PROMPT.format(checklist=checklist)
            return InboundEvent(
                session_key=self._main_session_key,
                text=text,
                source="heartbeat",
                agent_id=job.agent_id,
                channel="scheduler",
                job_id=job.job_id,
                delivery=job.delivery,
            )

        if job.session_policy == "isolated":
            stamp = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            session_key = f"cron:{job.job_id}:{stamp}-{job.run_count + 1}"
        else:
            session_key = self._main_session_key
        return InboundEvent(
            session_key=session_key,
            text=job.prompt or f"[Scheduled task {job.job_id}]",
            source="cron",
            agent_id=job.agent_id,
            channel="scheduler",
            job_id=job.job_id,
            delivery=job.delivery,
        )

    async def _fire(self, job: ScheduledJob, now: float) -> Optional[LoopResult]:
        event = self.build_event(job, now)
        if event is None:
            job.last_status = "skipped"
            logger.debug("scheduler.heartbeat_checklist_empty", job_id=job.job_id)
            return None

        job.last_fired_at = now
        job.run_count += 1
        logger.info(
            "scheduler.job_fired",
            job_id=job.job_id,
            kind=job.kind,
            session_key=event.session_key,
            run_count=job.run_count,
        )
        if self._event_bus is not None:
            self._event_bus.emit(SchedulerJobFiredEvent(
                job_id=job.job_id,
                kind=job.kind,
                session_key=event.session_key,
            ))

        try:
            result = await self._submit(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_failure(job, f"{type(e).__name__}: {e}")
            return None

        if result.reason in _FAILED_OUTCOMES:
            self._record_failure(job, result.error or result.reason.value)
        else:
            job.last_status = result.reason.value
            job.last_error = None
        return result

    def _record_failure(self, job: ScheduledJob, error: str) -> None:
        job.last_status = "failed"
        job.last_error = error
        logger.warning(
            "scheduler.job_failed",
            job_id=job.job_id,
            error=error,
            next_fire_at=_iso(job.next_fire_at),
        )
        if self._event_bus is not None:
            self._event_bus.emit(SchedulerJobFailedEvent(
                job_id=job.job_id,
                error=error,
                next_fire_at=job.next_fire_at,
            ))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        jobs = []
        for job in self._jobs.values():
            jobs.append({
                "job_id": job.job_id,
                "kind": job.kind,
                "enabled": job.enabled,
                "trigger": job.cron if job.kind == "cron" else f"every {job.interval_seconds:g}s",
                "timezone": job.timezone,
                "active_hours": job.active_hours or None,
                "session_policy": job.session_policy,
                "delivery": job.delivery,
                "next_fire_at": job.next_fire_at,
                "next_fire_iso": _iso(job.next_fire_at),
                "last_fired_at": job.last_fired_at,
                "last_status": job.last_status,
                "last_error": job.last_error,
                "run_count": job.run_count,
                "running": job.job_id in self._inflight,
            })
        return {"running": self._running, "timezone": str(self._tz), "jobs": jobs}
