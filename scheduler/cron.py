"""Cron resolution: schedule kinds, timezones and next-fire computation.

A schedule's ``kind`` is turned into a concrete five-field crontab expression
once, when the schedule is created or edited. From then on the expression
plus the schedule's timezone is the only input to ``next_fire_time``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from core.errors import ScheduleValidationError
from scheduler.models import ScheduleKind

KIND_CRON: dict[ScheduleKind, str] = {
    ScheduleKind.EVERY_5_MIN:    "*/5 * * * *",
    ScheduleKind.EVERY_10_MIN:   "*/10 * * * *",
    ScheduleKind.EVERY_30_MIN:   "*/30 * * * *",
    ScheduleKind.HOURLY:         "0 * * * *",
    ScheduleKind.EVERY_2_HOURS:  "0 */2 * * *",
    ScheduleKind.EVERY_6_HOURS:  "0 */6 * * *",
    ScheduleKind.EVERY_12_HOURS: "0 */12 * * *",
    ScheduleKind.DAILY:          "0 8 * * *",
    ScheduleKind.WEEKLY:         "0 8 * * mon",
}

# crontab numbers days 0-7 with 0 and 7 both Sunday; APScheduler numbers them
# 0-6 starting on Monday. Numeric day-of-week fields are rewritten to names.
_DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def resolve_cron(kind: ScheduleKind, cron_expression: str | None = None) -> str | None:
    """Concrete crontab expression for *kind*; None for ONCE schedules."""
    if kind == ScheduleKind.ONCE:
        return None
    if kind == ScheduleKind.CUSTOM:
        if not cron_expression or not cron_expression.strip():
            raise ScheduleValidationError("cron_expression is required for custom schedules")
        expr = " ".join(cron_expression.split())
        build_trigger(expr, "UTC")   # validates
        return expr
    return KIND_CRON[kind]


def validate_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleValidationError(f"Unknown timezone: {name!r}") from e


def build_trigger(cron: str, tz: str) -> CronTrigger:
    """APScheduler trigger for a five-field crontab expression in zone *tz*."""
    fields = cron.split()
    if len(fields) != 5:
        raise ScheduleValidationError(
            f"Cron expression must have 5 fields, got {len(fields)}: {cron!r}"
        )
    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_day_of_week(day_of_week),
            timezone=validate_timezone(tz),
        )
    except ValueError as e:
        raise ScheduleValidationError(f"Invalid cron expression {cron!r}: {e}") from e


def once_trigger(run_at: datetime, now: datetime | None = None) -> DateTrigger:
    """Single-fire trigger; a *run_at* already in the past fires straight away."""
    now = now or datetime.now(timezone.utc)
    return DateTrigger(run_date=max(run_at, now))


def next_fire_time(cron: str, tz: str, after: datetime | None = None) -> datetime | None:
    """First fire at or after *after* (default: now), in UTC.

    Pure function of its inputs: the same expression, zone and instant always
    yield the same result.
    """
    after = after or datetime.now(timezone.utc)
    nxt = build_trigger(cron, tz).get_next_fire_time(None, after.astimezone(timezone.utc))
    return nxt.astimezone(timezone.utc) if nxt else None


def to_utc(value: datetime, tz: str = "UTC") -> datetime:
    """Interpret a naive *value* in zone *tz*; convert any value to UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=validate_timezone(tz))
    return value.astimezone(timezone.utc)


def _day_of_week(field: str) -> str:
    if field == "*" or any(c.isalpha() for c in field):
        return field

    days: set[int] = set()
    for part in field.split(","):
        rng, _, step_s = part.partition("/")
        step = int(step_s) if step_s else 1
        if step < 1:
            raise ValueError(f"step must be positive in day-of-week field {field!r}")
        if rng == "*":
            first, last = 0, 6
        elif "-" in rng:
            a, b = rng.split("-", 1)
            first, last = int(a), int(b)
        else:
            first = int(rng)
            last = 6 if step_s else first
        if not (0 <= first <= 7 and 0 <= last <= 7) or first > last:
            raise ValueError(f"day-of-week out of range in {field!r}")
        days.update(d % 7 for d in range(first, last + 1, step))

    if len(days) == 7:
        return "*"
    return ",".join(_DAY_NAMES[d] for d in sorted(days))
