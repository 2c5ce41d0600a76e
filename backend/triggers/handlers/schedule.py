"""Schedule trigger handler.

Fires workflows from a structured schedule: either a fixed interval from
the moment the trigger was armed, or calendar fields (minutes, hours,
days of week, days of month) in an IANA timezone. Each armed workflow gets
a background task that sleeps until the next fire time, fires, and
computes the following one.
"""

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.constants import TriggerType
from triggers.base import BaseTriggerHandler, TriggerResult
from workflow.models import Schedule, TriggerConfig

logger = logging.getLogger(__name__)

# Calendar schedules that cannot fire within this many days are rejected
MAX_LOOKAHEAD_DAYS = 366 * 5


def _day_matches(schedule: Schedule, day: date) -> bool:
    """Day filter with cron semantics: when both day fields are set, either may match."""
    dow, dom = schedule.days_of_week, schedule.days_of_month
    if dow and dom:
        return day.weekday() in dow or day.day in dom
    if dow:
        return day.weekday() in dow
    if dom:
        return day.day in dom
    return True


def compute_next_fire(schedule: Schedule, after: datetime, anchor: Optional[datetime] = None) -> datetime:
    """Return the first fire time strictly after ``after`` (timezone-aware, UTC).

    Args:
        schedule: The trigger's schedule
        after: Reference instant; must be timezone-aware
        anchor: Start of the interval grid for interval schedules (default: ``after``)

    Raises:
        ValueError: If a calendar schedule never fires
    """
    after = after.astimezone(timezone.utc)

    if schedule.is_interval:
        period = timedelta(seconds=schedule.interval_seconds)
        anchor = (anchor or after).astimezone(timezone.utc)
        if anchor > after:
            return anchor
        elapsed = after - anchor
        steps = elapsed // period + 1
        return anchor + steps * period

    tz = ZoneInfo(schedule.timezone)
    hours = schedule.hours or list(range(24))
    minutes = schedule.minutes or list(range(60))
    local_after = after.astimezone(tz)

    day = local_after.date()
    for _ in range(MAX_LOOKAHEAD_DAYS):
        if _day_matches(schedule, day):
            for hour in hours:
                for minute in minutes:
                    candidate = datetime.combine(day, time(hour, minute), tzinfo=tz).astimezone(timezone.utc)
                    if candidate > after:
                        return candidate
        day += timedelta(days=1)
    raise ValueError("Schedule never fires")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleTriggerHandler(BaseTriggerHandler):
    """Handler for scheduled triggers.

    Config (``TriggerConfig.schedule``):
        {
            "interval_seconds": 900            # or calendar fields below
            "minutes": [0, 30],
            "hours": [9],
            "days_of_week": [0, 1, 2, 3, 4],   # 0 = Monday
            "days_of_month": [],
            "timezone": "Europe/Sofia"
        }
    """

    trigger_type = TriggerType.SCHEDULE

    def __init__(
        self,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        super().__init__()
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._tasks: dict[str, asyncio.Task] = {}
        self._next_fire: dict[str, datetime] = {}
        self._fire_counts: dict[str, int] = {}

    async def start(self, workflow_id: str, trigger: TriggerConfig) -> TriggerResult:
        """Start the background task that fires this workflow on schedule."""
        is_valid, error = self.validate_config(trigger)
        if not is_valid:
            return TriggerResult(success=False, message=f"Invalid config: {error}", workflow_id=workflow_id, error=error)

        await self.stop(workflow_id)
        anchor = self._clock()
        self._next_fire[workflow_id] = compute_next_fire(trigger.schedule, anchor, anchor)
        self._fire_counts[workflow_id] = 0
        self._tasks[workflow_id] = asyncio.create_task(
            self._run_schedule(workflow_id, trigger.schedule, anchor),
            name=f"schedule-{workflow_id}",
        )
        logger.info("Schedule armed for workflow %s, next fire at %s", workflow_id, self._next_fire[workflow_id])
        return TriggerResult(
            success=True,
            message=f"Schedule armed, next fire at {self._next_fire[workflow_id].isoformat()}",
            workflow_id=workflow_id,
        )

    async def stop(self, workflow_id: str) -> TriggerResult:
        task = self._tasks.pop(workflow_id, None)
        self._next_fire.pop(workflow_id, None)
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Schedule disarmed for workflow %s", workflow_id)
        return TriggerResult(success=True, message="Schedule disarmed", workflow_id=workflow_id)

    def validate_config(self, trigger: TriggerConfig) -> tuple[bool, Optional[str]]:
        schedule = trigger.schedule
        if schedule is None:
            return False, "Missing required field: schedule"
        try:
            ZoneInfo(schedule.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return False, f"Unknown timezone: {schedule.timezone}"
        if not schedule.is_interval:
            try:
                compute_next_fire(schedule, self._clock())
            except ValueError as exc:
                return False, str(exc)
        return True, None

    def next_fire_time(self, workflow_id: str) -> Optional[datetime]:
        return self._next_fire.get(workflow_id)

    def list_active(self) -> list[str]:
        return sorted(self._tasks)

    async def _run_schedule(self, workflow_id: str, schedule: Schedule, anchor: datetime) -> None:
        while True:
            next_fire = self._next_fire[workflow_id]
            delay = (next_fire - self._clock()).total_seconds()
            if delay > 0:
                await self._sleep(delay)

            self._fire_counts[workflow_id] += 1
            if self._fire_callback is not None:
                try:
                    await self._fire_callback(
                        workflow_id,
                        {"scheduled_time": next_fire.isoformat(), "fire_count": self._fire_counts[workflow_id]},
                        "schedule",
                    )
                except Exception as exc:
                    logger.error("Scheduled fire failed for workflow %s: %s", workflow_id, exc)

            # Re-arm strictly after the slot that just fired so a slow fire never repeats it
            self._next_fire[workflow_id] = compute_next_fire(schedule, max(next_fire, self._clock()), anchor)
