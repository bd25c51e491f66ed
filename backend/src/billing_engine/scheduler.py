from __future__ import annotations

import asyncio
import inspect
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

JobHandler = Callable[[], Any]


class JobNotFoundError(KeyError):
    """Raised when a job name is not in the orchestrator registry."""


class Trigger(Protocol):
    def next_fire(self, after: datetime) -> datetime: ...


@dataclass(frozen=True)
class IntervalTrigger:
    """Fires on wall-clock multiples of ``seconds`` (every 30 s lands on :00 and :30)."""

    seconds: float

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ValueError("interval must be positive")

    def next_fire(self, after: datetime) -> datetime:
        timestamp = after.timestamp()
        slot = (math.floor(timestamp / self.seconds) + 1) * self.seconds
        return datetime.fromtimestamp(slot, tz=after.tzinfo)


@dataclass(frozen=True)
class HourlyTrigger:
    minute: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.minute <= 59:
            raise ValueError("minute must be between 0 and 59")

    def next_fire(self, after: datetime) -> datetime:
        candidate = after.replace(minute=self.minute, second=0, microsecond=0)
        if candidate <= after:
            candidate += timedelta(hours=1)
        return candidate


@dataclass(frozen=True)
class DailyTrigger:
    hour: int
    minute: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.hour <= 23:
            raise ValueError("hour must be between 0 and 23")
        if not 0 <= self.minute <= 59:
            raise ValueError("minute must be between 0 and 59")

    def next_fire(self, after: datetime) -> datetime:
        candidate = after.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= after:
            candidate += timedelta(days=1)
        return candidate


def seconds_until(fire_at: datetime, now: datetime) -> float:
    # Aware datetimes sharing a tzinfo subtract as wall time, so compare timestamps.
    return max(fire_at.timestamp() - now.timestamp(), 0.0)


def next_fire_time(trigger: Trigger, now: datetime, previous: datetime | None = None) -> datetime:
    """Next slot strictly after both ``now`` and the slot that fired last."""
    if previous is not None and previous.timestamp() >= now.timestamp():
        return trigger.next_fire(previous)
    return trigger.next_fire(now)


@dataclass
class ScheduledJob:
    name: str
    trigger: Trigger
    handler: JobHandler
    timer: asyncio.Task[None] | None = None
    in_flight: bool = False
    runs: int = 0
    skipped: int = 0
    last_error: str | None = None
    active_runs: set[asyncio.Task[bool]] = field(default_factory=set)

    @property
    def active(self) -> bool:
        return self.timer is not None and not self.timer.done()


class JobOrchestrator:
    """Runs named periodic jobs on one asyncio loop.

    Each job owns one timer task. A tick that arrives while the previous run of
    the same job is still executing is skipped when ``skip_if_running`` is set.
    """

    def __init__(
        self,
        *,
        timezone_name: str = "America/Sao_Paulo",
        skip_if_running: bool = True,
        clock: Callable[[ZoneInfo], datetime] | None = None,
    ) -> None:
        self._timezone = ZoneInfo(timezone_name)
        self._skip_if_running = skip_if_running
        self._clock = clock or (lambda tz: datetime.now(tz))
        self._jobs: dict[str, ScheduledJob] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def timezone(self) -> ZoneInfo:
        return self._timezone

    def job_names(self) -> list[str]:
        return list(self._jobs)

    def get_job(self, name: str) -> ScheduledJob:
        job = self._jobs.get(name)
        if job is None:
            raise JobNotFoundError(name)
        return job

    def register(self, name: str, trigger: Trigger, handler: JobHandler) -> ScheduledJob:
        previous = self._jobs.pop(name, None)
        if previous is not None and previous.timer is not None:
            previous.timer.cancel()
            logger.info("job %s replaced; previous timer stopped", name)

        job = ScheduledJob(name=name, trigger=trigger, handler=handler)
        self._jobs[name] = job
        if self._running:
            self._activate(job)
        return job

    async def start(self) -> None:
        self._running = True
        for job in self._jobs.values():
            if not job.active:
                self._activate(job)
        logger.info("scheduler started with %d jobs (%s)", len(self._jobs), self._timezone.key)

    async def stop(self) -> None:
        pending: list[asyncio.Task[Any]] = []
        for job in self._jobs.values():
            if job.timer is not None:
                job.timer.cancel()
                pending.append(job.timer)
            for run in list(job.active_runs):
                run.cancel()
                pending.append(run)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._jobs.clear()
        self._running = False
        logger.info("scheduler stopped")

    def status(self) -> dict[str, bool]:
        return {name: job.active for name, job in self._jobs.items()}

    async def run_now(self, name: str) -> bool:
        return await self._execute(self.get_job(name))

    def _activate(self, job: ScheduledJob) -> None:
        job.timer = asyncio.create_task(self._timer_loop(job), name=f"job-timer:{job.name}")

    async def _timer_loop(self, job: ScheduledJob) -> None:
        previous: datetime | None = None
        while True:
            now = self._clock(self._timezone)
            fire_at = next_fire_time(job.trigger, now, previous)
            await asyncio.sleep(seconds_until(fire_at, now))
            previous = fire_at
            run = asyncio.create_task(self._execute(job), name=f"job-run:{job.name}")
            job.active_runs.add(run)
            run.add_done_callback(job.active_runs.discard)

    async def _execute(self, job: ScheduledJob) -> bool:
        if job.in_flight and self._skip_if_running:
            job.skipped += 1
            logger.warning("job %s is still running; skipping this tick", job.name)
            return False

        job.in_flight = True
        started = time.monotonic()
        logger.info("job %s started", job.name)
        try:
            if inspect.iscoroutinefunction(job.handler):
                await job.handler()
            else:
                await asyncio.to_thread(job.handler)
            job.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.last_error = str(exc)
            logger.exception("job %s failed", job.name)
        finally:
            job.in_flight = False
            job.runs += 1
        logger.info("job %s finished in %.2fs", job.name, time.monotonic() - started)
        return True
