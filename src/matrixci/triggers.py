# triggers.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from .errors import ConfigInvalid
from .model import Event, EventKind, TriggerConfig, WorkflowSpec


# ---------------------------------------------------------------------
# Cron expressions
# ---------------------------------------------------------------------

# (name, min, max)
_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 7),
)


def _parse_field(text: str, name: str, lo: int, hi: int) -> FrozenSet[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ValueError(f"empty list item in {name} field")
        step = 1
        if "/" in part:
            part, step_s = part.split("/", 1)
            step = int(step_s)
            if step < 1:
                raise ValueError(f"step must be >= 1 in {name} field")
        if part == "*":
            start, end = lo, hi
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = int(a), int(b)
        else:
            start = int(part)
            # "5/15" means 5, 20, 35, ...
            end = hi if step != 1 else start
        if start < lo or end > hi or start > end:
            raise ValueError(f"{name} value out of range {lo}-{hi}: {part}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """
    Standard five-field cron: minute hour day-of-month month day-of-week.

    Day of week is 0-7 with both 0 and 7 meaning Sunday. When both day
    fields are restricted a tick matches if either one does.
    Ticks are evaluated in UTC at minute resolution.
    """
    text: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    days_restricted: bool
    weekdays_restricted: bool

    @classmethod
    def parse(cls, text: str) -> CronExpression:
        parts = text.split()
        if len(parts) != 5:
            raise ConfigInvalid(f"cron expression must have 5 fields, got {len(parts)}: {text!r}")
        try:
            parsed = [_parse_field(p, *spec) for p, spec in zip(parts, _FIELDS)]
        except ValueError as e:
            raise ConfigInvalid(f"invalid cron expression {text!r}: {e}") from e

        weekdays = frozenset(0 if d == 7 else d for d in parsed[4])
        return cls(
            text=text,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            days_restricted=not parts[2].startswith("*"),
            weekdays_restricted=not parts[4].startswith("*"),
        )

    def matches(self, tick: datetime) -> bool:
        t = _as_utc(tick)
        if t.minute not in self.minutes or t.hour not in self.hours or t.month not in self.months:
            return False
        return self._day_matches(t)

    def next_after(self, after: datetime, *, limit_days: int = 366 * 5) -> Optional[datetime]:
        """First matching minute strictly after `after` (UTC), or None within limit."""
        t = _as_utc(after).replace(second=0, microsecond=0) + timedelta(minutes=1)
        end = t + timedelta(days=limit_days)
        while t < end:
            if t.month not in self.months:
                # jump to the first minute of next month
                t = (t.replace(day=1, hour=0, minute=0) + timedelta(days=32)).replace(day=1)
                continue
            if not self._day_matches(t):
                t = t.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if t.hour not in self.hours:
                t = t.replace(minute=0) + timedelta(hours=1)
                continue
            if t.minute in self.minutes:
                return t
            t += timedelta(minutes=1)
        return None

    def _day_matches(self, t: datetime) -> bool:
        # python: Monday=0 .. Sunday=6; cron: Sunday=0 .. Saturday=6
        dow = (t.weekday() + 1) % 7
        day_ok = t.day in self.days
        dow_ok = dow in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return day_ok or dow_ok
        return day_ok and dow_ok

    def __str__(self) -> str:
        return self.text


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------
# Trigger predicates (one per event kind)
# ---------------------------------------------------------------------

def _admit_pull_request(event: Event, triggers: TriggerConfig) -> bool:
    return triggers.pull_request


def _admit_push(event: Event, triggers: TriggerConfig) -> bool:
    if not triggers.push_enabled or not event.branch:
        return False
    if triggers.push_branches is None:
        return True
    return event.branch in triggers.push_branches


def _admit_scheduled(event: Event, triggers: TriggerConfig) -> bool:
    if event.cron_tick is None:
        return False
    return any(cron.matches(event.cron_tick) for cron in triggers.schedules)


_PREDICATES: Dict[EventKind, Callable[[Event, TriggerConfig], bool]] = {
    EventKind.PULL_REQUEST: _admit_pull_request,
    EventKind.PUSH: _admit_push,
    EventKind.SCHEDULED: _admit_scheduled,
}


def should_run(event: Event, workflow_spec: WorkflowSpec) -> bool:
    """
    Decide whether `event` starts a run of `workflow_spec`.

    Pure predicate, no I/O. Unknown event kinds are rejected rather than
    raising, so new event types from the trigger source are a no-op.
    """
    kind = event.kind
    if not isinstance(kind, EventKind):
        kind = EventKind.parse(str(kind))
    predicate = _PREDICATES.get(kind) if kind is not None else None
    if predicate is None:
        return False
    return predicate(event, workflow_spec.triggers)


def next_scheduled_tick(workflow_spec: WorkflowSpec, after: datetime) -> Optional[datetime]:
    """Earliest tick after `after` that any schedule of the workflow admits."""
    ticks: Tuple = tuple(
        t for t in (cron.next_after(after) for cron in workflow_spec.triggers.schedules) if t is not None
    )
    return min(ticks) if ticks else None
