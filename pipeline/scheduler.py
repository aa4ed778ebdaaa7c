"""
Cron-style triggers and the in-process scheduling loop.

Expressions use the usual five fields::

    minute hour day-of-month month day-of-week
    45     21   *            *     5            -> Fridays at 21:45

Each field accepts ``*``, integers, ``a-b`` ranges, ``*/n`` / ``a-b/n``
steps and comma lists. Day-of-week is 0-7 with both 0 and 7 meaning Sunday.
As in cron, when both day fields are restricted a day matches if either does.

run_scheduled() is a plain sleep loop that fires the weekly sync and the
daily health check when due; the orchestrator itself only exposes trigger().
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

logger = logging.getLogger(__name__)

_FIELD_RANGES = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)

# Upper bound on the day scan; any valid expression fires within 4 years (Feb 29).
_MAX_DAYS = 366 * 4 + 1


def _parse_field(text: str, name: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            raise ValueError(f"Empty {name} field")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step < 1:
                raise ValueError(f"Bad step in {name} field: {step_text}")
        if part == "*":
            start, end = low, high
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = int(a), int(b)
        else:
            start = end = int(part)
            if step != 1:
                end = high
        if start < low or end > high or start > end:
            raise ValueError(f"{name} value out of range {low}-{high}: {text}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronTrigger:
    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]          # cron numbering, 0 = Sunday
    day_restricted: bool
    weekday_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronTrigger":
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"Cron expression needs 5 fields, got {len(fields)}: {expression!r}")
        parsed = [
            _parse_field(text, name, low, high)
            for text, (name, low, high) in zip(fields, _FIELD_RANGES)
        ]
        weekdays = frozenset(d % 7 for d in parsed[4])
        return cls(
            expression=expression,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            day_restricted=not fields[2].startswith("*"),
            weekday_restricted=not fields[4].startswith("*"),
        )

    def _day_matches(self, day: datetime) -> bool:
        if day.month not in self.months:
            return False
        dom = day.day in self.days
        dow = (day.weekday() + 1) % 7 in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return dom or dow
        return dom and dow

    def matches(self, moment: datetime) -> bool:
        return (
            self._day_matches(moment)
            and moment.hour in self.hours
            and moment.minute in self.minutes
        )

    def next_after(self, after: datetime) -> datetime:
        """First matching minute strictly after *after*."""
        start = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        day = start.replace(hour=0, minute=0)
        for _ in range(_MAX_DAYS):
            if self._day_matches(day):
                for hour in sorted(self.hours):
                    for minute in sorted(self.minutes):
                        candidate = day.replace(hour=hour, minute=minute)
                        if candidate >= start:
                            return candidate
            day += timedelta(days=1)
        raise ValueError(f"Cron expression never fires: {self.expression!r}")


def run_scheduled(jobs: dict[str, tuple[CronTrigger, Callable[[], object]]],
                  now: Callable[[], datetime] = datetime.now,
                  sleep: Callable[[float], None] = time.sleep,
                  max_runs: int | None = None) -> int:
    """Fire each job when its trigger comes due; loop forever by default.

    Args:
        jobs: name -> (trigger, callable). Callables run sequentially, never
            overlapping.
        now: Clock, injectable for tests.
        sleep: Sleep function, injectable for tests.
        max_runs: Stop after this many job executions (None = forever).

    Returns:
        Number of job executions performed.
    """
    if not jobs:
        raise ValueError("No jobs to schedule")
    runs = 0
    next_fire = {name: trig.next_after(now()) for name, (trig, _) in jobs.items()}
    for name, when in next_fire.items():
        logger.info("Scheduled %s (%s); next run %s",
                    name, jobs[name][0].expression, when.isoformat())

    while max_runs is None or runs < max_runs:
        name = min(next_fire, key=next_fire.get)
        when = next_fire[name]
        wait = (when - now()).total_seconds()
        if wait > 0:
            logger.info("Sleeping %.0fs until %s (%s)", wait, when.isoformat(), name)
            sleep(wait)

        logger.info("Starting scheduled %s", name)
        trigger, job = jobs[name]
        try:
            job()
        except Exception:
            logger.exception("Scheduled %s raised", name)
        runs += 1
        next_fire[name] = trigger.next_after(max(now(), when))
        logger.info("Next %s scheduled for %s", name, next_fire[name].isoformat())
    return runs
