"""Cron driven creation of recurring jobs.

Expressions have six fields, ``second minute hour day month weekday``:

    "0 0 2 * * *"    daily at 02:00
    "0 */5 * * * *"  every 5 minutes
    "0 0 * * * 1-5"  hourly on weekdays

Weekdays count from 0 = Sunday (7 is Sunday as well); they are translated
to names before being handed to APScheduler, which counts from Monday.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterator, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.jobs.errors import JobError, ValidationError
from src.jobs.job import Job, generate_job_id, new_job
from src.jobs.queue import JobQueue

logger = structlog.get_logger()

_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


def _translate_weekday(spec: str) -> str:
    """Rewrite a Sunday-based weekday field using day names."""
    names: list[str] = []

    for token in spec.split(","):
        base, _, step_text = token.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"invalid step in weekday field: {token}")

        if base in ("*", "?"):
            if step == 1:
                return "*"
            days = range(0, 7, step)
        elif "-" in base:
            start, _, end = base.partition("-")
            if not (start.isdigit() and end.isdigit()):
                names.append(token.lower())
                continue
            if int(start) > int(end):
                raise ValueError(f"invalid weekday range: {base}")
            days = range(int(start), int(end) + 1, step)
        elif base.isdigit():
            days = range(int(base), 7, step) if step_text else [int(base)]
        else:
            names.append(token.lower())
            continue

        for day in days:
            if day > 7:
                raise ValueError(f"weekday out of range: {day}")
            name = _WEEKDAY_NAMES[day % 7]
            if name not in names:
                names.append(name)

    return ",".join(names)


def parse_cron(cron_expr: str, timezone: str = "UTC") -> CronTrigger:
    """Build a CronTrigger from a 6-field cron expression.

    Raises:
        ValidationError: If the expression is malformed
    """
    fields = cron_expr.split()
    if len(fields) != 6:
        raise ValidationError(
            f"cron expression '{cron_expr}' must have 6 fields "
            f"(second minute hour day month weekday), got {len(fields)}"
        )

    second, minute, hour, day, month, weekday = fields
    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day="*" if day == "?" else day,
            month=month,
            day_of_week=_translate_weekday(weekday),
            timezone=timezone,
        )
    except (LookupError, TypeError, ValueError) as e:
        raise ValidationError(f"invalid cron expression '{cron_expr}': {e}") from e


def iter_fire_times(trigger: CronTrigger, start: datetime, end: datetime) -> Iterator[datetime]:
    """Yield the times ``trigger`` fires after ``start`` up to and including ``end``."""
    previous: Optional[datetime] = None
    now = start + timedelta(microseconds=1)

    while True:
        fire_time = trigger.get_next_fire_time(previous, now)
        if fire_time is None or fire_time > end:
            return
        yield fire_time
        previous = fire_time
        now = fire_time + timedelta(microseconds=1)


@dataclass
class ScheduleEntry:
    """A registered recurring job."""
    id: str
    cron_expr: str
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    trigger: Optional[CronTrigger] = field(default=None, repr=False, compare=False)

    def next_run_time(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if self.trigger is None:
            return None
        now = now or datetime.now(self.trigger.timezone)
        return self.trigger.get_next_fire_time(None, now)


class Scheduler:
    """Enqueues jobs on cron schedules.

    Ticks only create jobs while the scheduler is RUNNING. A tick whose
    enqueue fails is logged and dropped; retrying is left to the next tick.
    """

    def __init__(
        self,
        queue: JobQueue,
        max_retries: int = 3,
        enqueue_timeout: float = 5.0,
        timezone: str = "UTC",
    ):
        """Initialize scheduler.

        Args:
            queue: JobQueue scheduled jobs are enqueued on
            max_retries: max_retries given to every scheduled job
            enqueue_timeout: Seconds allowed for one enqueue
            timezone: Timezone the cron expressions are evaluated in
        """
        self.queue = queue
        self.max_retries = max_retries
        self.enqueue_timeout = enqueue_timeout
        self.timezone = timezone
        self._aps = AsyncIOScheduler(timezone=timezone)
        self._entries: dict[str, ScheduleEntry] = {}
        self._state = SchedulerState.STOPPED
        self._lock = asyncio.Lock()
        self._inflight: set[asyncio.Task] = set()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    def schedule(
        self, cron_expr: str, job_type: str, payload: Optional[dict[str, Any]] = None
    ) -> str:
        """Register a recurring job.

        Args:
            cron_expr: 6-field cron expression
            job_type: Type of the jobs to create
            payload: Payload copied into every created job

        Returns:
            Schedule id

        Raises:
            ValidationError: If the expression or job type is invalid
        """
        if not job_type:
            raise ValidationError("job type cannot be empty")

        trigger = parse_cron(cron_expr, self.timezone)
        entry = ScheduleEntry(
            id=generate_job_id(),
            cron_expr=cron_expr,
            job_type=job_type,
            payload=dict(payload or {}),
            trigger=trigger,
        )

        self._aps.add_job(
            self._on_tick,
            trigger,
            args=[entry.id],
            id=entry.id,
            name=f"{job_type} ({cron_expr})",
            coalesce=True,
            max_instances=1,
        )
        self._entries[entry.id] = entry

        logger.info(
            "scheduled_job_registered",
            schedule_id=entry.id,
            cron_expr=cron_expr,
            job_type=job_type,
            source="scheduler",
        )

        return entry.id

    def unschedule(self, schedule_id: str) -> bool:
        entry = self._entries.pop(schedule_id, None)
        if entry is None:
            return False

        self._aps.remove_job(schedule_id)
        logger.info("scheduled_job_removed", schedule_id=schedule_id, source="scheduler")
        return True

    def get_schedules(self) -> list[ScheduleEntry]:
        return list(self._entries.values())

    async def start(self) -> None:
        async with self._lock:
            if self._state is SchedulerState.RUNNING:
                return

            if self._aps.running:
                self._aps.resume()
            else:
                self._aps.start()
            self._state = SchedulerState.RUNNING

        logger.info("job_scheduler_started", schedules=len(self._entries), source="scheduler")

    async def stop(self) -> None:
        """Stop creating jobs and wait for in-flight dispatches to finish."""
        async with self._lock:
            if self._state is SchedulerState.STOPPED:
                return

            self._state = SchedulerState.STOPPED
            if self._aps.running:
                self._aps.pause()

        if self._inflight:
            await asyncio.wait(set(self._inflight))

        logger.info("job_scheduler_stopped", source="scheduler")

    async def shutdown(self) -> None:
        """Stop and release the cron driver. The scheduler cannot be restarted."""
        await self.stop()
        if self._aps.running:
            self._aps.shutdown(wait=False)

    async def dispatch(self, entry: ScheduleEntry) -> Optional[Job]:
        """Create and enqueue one job for ``entry``.

        Returns:
            The enqueued job, or None if the enqueue failed
        """
        job = new_job(entry.job_type, entry.payload, self.max_retries)

        try:
            await asyncio.wait_for(self.queue.enqueue(job), timeout=self.enqueue_timeout)
        except (JobError, asyncio.TimeoutError) as e:
            logger.error(
                "scheduled_job_enqueue_failed",
                cron_expr=entry.cron_expr,
                job_type=entry.job_type,
                error=str(e) or type(e).__name__,
                source="scheduler",
            )
            return None

        logger.info(
            "scheduled_job_enqueued",
            cron_expr=entry.cron_expr,
            job_type=entry.job_type,
            job_id=job.id,
            source="scheduler",
        )

        return job

    async def _on_tick(self, schedule_id: str) -> None:
        if self._state is not SchedulerState.RUNNING:
            return

        entry = self._entries.get(schedule_id)
        if entry is None:
            return

        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            await self.dispatch(entry)
        finally:
            if task is not None:
                self._inflight.discard(task)
