"""Five-field cron expressions evaluated in a schedule's own timezone.

Field matching is delegated to APScheduler's ``CronTrigger``. Triggers are
always evaluated against naive wall-clock time (as if the zone had no DST) and
the resulting wall time is then placed into the real zone:

* a wall time inside a spring-forward gap is moved to the first wall time
  that exists after the gap;
* a wall time that occurs twice on a fall-back night resolves to its first
  occurrence, so it fires once.

Classic cron rules that APScheduler does not follow on its own are applied
while building triggers: weekday ``0`` and ``7`` are Sunday, and when both
day-of-month and day-of-week are restricted a day matching either fires.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_MAX_SEARCH_STEPS = 1000
_MAX_GAP_MINUTES = 24 * 60


class CronError(ValueError):
    pass


@dataclass(frozen=True)
class CronSpec:
    expression: str
    triggers: tuple[CronTrigger, ...]


def validate_cron(expression: str) -> str:
    spec = parse_cron(expression)
    return spec.expression


def resolve_timezone(name: str) -> ZoneInfo:
    if not name or not name.strip():
        raise CronError("timezone is required")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise CronError(f"unknown timezone {name!r}") from exc


@lru_cache(maxsize=256)
def parse_cron(expression: str) -> CronSpec:
    if not isinstance(expression, str):
        raise CronError("cron expression must be a string")
    fields = expression.split()
    if len(fields) != 5:
        raise CronError(
            f"cron expression must have 5 fields (minute hour day month weekday), got {len(fields)}"
        )
    minute, hour, day, month, weekday = fields
    weekday_names = _translate_weekdays(weekday)
    try:
        if day != "*" and weekday_names != "*":
            triggers = (
                _build_trigger(minute, hour, day, month, "*"),
                _build_trigger(minute, hour, "*", month, weekday_names),
            )
        else:
            triggers = (_build_trigger(minute, hour, day, month, weekday_names),)
    except ValueError as exc:
        raise CronError(f"invalid cron expression {expression!r}: {exc}") from exc
    return CronSpec(expression=" ".join(fields), triggers=triggers)


def next_fire_time(expression: str, timezone_name: str, from_dt: datetime) -> datetime | None:
    """Return the first fire instant strictly after ``from_dt``, in UTC.

    ``None`` means the expression can never fire again (for example
    ``0 0 30 2 *``).
    """
    spec = parse_cron(expression)
    zone = resolve_timezone(timezone_name)
    if from_dt.tzinfo is None:
        from_dt = from_dt.replace(tzinfo=timezone.utc)
    from_utc = from_dt.astimezone(timezone.utc)
    wall = from_utc.astimezone(zone).replace(tzinfo=None)
    for _ in range(_MAX_SEARCH_STEPS):
        candidate = _next_wall_time(spec, wall)
        if candidate is None:
            return None
        instant = _place_in_zone(candidate, zone)
        if instant > from_utc:
            return instant
        # Second pass through a repeated hour: the first occurrence already
        # happened before from_dt, keep searching.
        wall = candidate
    raise CronError(f"no fire time found for {expression!r}")


def _next_wall_time(spec: CronSpec, wall: datetime) -> datetime | None:
    probe = (wall + timedelta(microseconds=1)).replace(tzinfo=timezone.utc)
    candidates = []
    for trigger in spec.triggers:
        fire = trigger.get_next_fire_time(None, probe)
        if fire is not None:
            candidates.append(fire.astimezone(timezone.utc).replace(tzinfo=None))
    if not candidates:
        return None
    return min(candidates)


def _place_in_zone(wall: datetime, zone: ZoneInfo) -> datetime:
    if _wall_time_exists(wall, zone):
        return wall.replace(tzinfo=zone, fold=0).astimezone(timezone.utc)
    probe = wall.replace(second=0, microsecond=0)
    for _ in range(_MAX_GAP_MINUTES):
        probe += timedelta(minutes=1)
        if _wall_time_exists(probe, zone):
            return probe.replace(tzinfo=zone, fold=0).astimezone(timezone.utc)
    raise CronError(f"wall time {wall.isoformat()} cannot be placed in {zone.key}")


def _wall_time_exists(wall: datetime, zone: ZoneInfo) -> bool:
    aware = wall.replace(tzinfo=zone, fold=0)
    roundtrip = aware.astimezone(timezone.utc).astimezone(zone).replace(tzinfo=None)
    return roundtrip == wall


def _build_trigger(minute: str, hour: str, day: str, month: str, weekday: str) -> CronTrigger:
    return CronTrigger(
        month=month,
        day=day,
        day_of_week=weekday,
        hour=hour,
        minute=minute,
        second="0",
        timezone=timezone.utc,
    )


def _translate_weekdays(field: str) -> str:
    # APScheduler numbers weekdays from Monday; cron numbers them from Sunday.
    # Expanding to explicit names sidesteps the difference.
    if field == "*":
        return "*"
    days: set[int] = set()
    for token in field.split(","):
        days.update(_expand_weekday_token(token.strip().lower()))
    if len(days) == 7:
        return "*"
    return ",".join(_WEEKDAY_NAMES[day] for day in sorted(days))


def _expand_weekday_token(token: str) -> list[int]:
    if not token:
        raise CronError("empty weekday value")
    step = 1
    if "/" in token:
        token, step_text = token.split("/", 1)
        if not step_text.isdigit() or int(step_text) < 1:
            raise CronError(f"invalid weekday step {step_text!r}")
        step = int(step_text)
    if token == "*":
        first, last = 0, 6
    elif "-" in token:
        first_text, last_text = token.split("-", 1)
        first, last = _weekday_number(first_text), _weekday_number(last_text)
        if last == 0 and first > 0:
            last = 7
        if last < first:
            raise CronError(f"invalid weekday range {token!r}")
    else:
        first = _weekday_number(token)
        last = 6 if step > 1 else first
    return [day % 7 for day in range(first, last + 1, step)]


def _weekday_number(text: str) -> int:
    if text.isdigit():
        value = int(text)
        if value > 7:
            raise CronError(f"weekday {value} out of range 0-7")
        return value
    if text in _WEEKDAY_NAMES:
        return _WEEKDAY_NAMES.index(text)
    raise CronError(f"unrecognized weekday {text!r}")
