"""Cron expressions, a background cron scheduler and a single-run guard."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)

_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"],
        start=1,
    )
}
_DAY_NAMES = {
    name: number
    for number, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])
}
_NO_NAMES: dict[str, int] = {}
_SEARCH_YEARS = 5
_STAR_PREFIXES = ("*", "?")


def _parse_value(text: str, names: dict[str, int]) -> int:
    key = text.strip().upper()
    if key in names:
        return names[key]
    if not key.isdigit():
        raise ValueError(f"invalid cron value: {text!r}")
    return int(key)


def _parse_field(text: str, low: int, high: int, names: dict[str, int]) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ValueError(f"empty cron field part in {text!r}")
        range_text, has_step, step_text = part.partition("/")
        step = 1
        if has_step:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"invalid cron step: {part!r}")
            step = int(step_text)
        if range_text in _STAR_PREFIXES:
            start, end = low, high
        elif "-" in range_text:
            first, _, last = range_text.partition("-")
            start, end = _parse_value(first, names), _parse_value(last, names)
        else:
            start = _parse_value(range_text, names)
            end = high if has_step else start
        if not low <= start <= end <= high:
            raise ValueError(f"cron field out of range: {part!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """A standard five-field cron schedule: minute hour day-of-month month day-of-week."""

    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    day_star: bool = False
    weekday_star: bool = False

    @classmethod
    def parse(cls, text: str) -> "CronExpression":
        """Parse a five-field expression or a descriptor such as @daily."""
        spec = text.strip()
        if spec.startswith("@"):
            try:
                spec = _DESCRIPTORS[spec.lower()]
            except KeyError:
                raise ValueError(f"unknown cron descriptor: {text!r}") from None
        fields = spec.split()
        if len(fields) != 5:
            raise ValueError(f"expected 5 cron fields, got {len(fields)}: {text!r}")
        minute, hour, day, month, weekday = fields
        return cls(
            minutes=_parse_field(minute, 0, 59, _NO_NAMES),
            hours=_parse_field(hour, 0, 23, _NO_NAMES),
            days=_parse_field(day, 1, 31, _NO_NAMES),
            months=_parse_field(month, 1, 12, _MONTH_NAMES),
            weekdays=frozenset(v % 7 for v in _parse_field(weekday, 0, 7, _DAY_NAMES)),
            day_star=day.startswith(_STAR_PREFIXES),
            weekday_star=weekday.startswith(_STAR_PREFIXES),
        )

    def _day_matches(self, moment: datetime) -> bool:
        day_ok = moment.day in self.days
        weekday_ok = (moment.weekday() + 1) % 7 in self.weekdays
        if self.day_star or self.weekday_star:
            return day_ok and weekday_ok
        return day_ok or weekday_ok

    def matches(self, moment: datetime) -> bool:
        """True when the schedule fires in the minute of the given moment."""
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_after(self, moment: datetime) -> datetime:
        """The first minute strictly after the moment at which the schedule fires."""
        current = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        last_year = current.year + _SEARCH_YEARS
        while current.year <= last_year:
            if current.month not in self.months:
                if current.month == 12:
                    current = current.replace(year=current.year + 1, month=1, day=1, hour=0, minute=0)
                else:
                    current = current.replace(month=current.month + 1, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(current):
                current = current.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if current.hour not in self.hours:
                current = current.replace(minute=0) + timedelta(hours=1)
                continue
            if current.minute not in self.minutes:
                current += timedelta(minutes=1)
                continue
            return current
        raise ValueError("cron expression never fires")


class CronScheduler:
    """Runs a job in the background each time a cron expression fires."""

    def __init__(
        self,
        expression: Union[str, CronExpression],
        job: Callable[[], object],
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if isinstance(expression, CronExpression):
            self.expression = expression
        else:
            self.expression = CronExpression.parse(expression)
        self._job = job
        self._clock = clock or datetime.now
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the background loop; does nothing if it already runs."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="cron-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background loop; jobs already started run to completion."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            now = self._clock()
            delay = (self.expression.next_after(now) - now).total_seconds()
            if self._stop_event.wait(max(0.0, delay)):
                break
            threading.Thread(target=self._fire, name="cron-job", daemon=True).start()

    def _fire(self) -> None:
        try:
            self._job()
        except Exception:
            logger.exception("Scheduled job failed")


class SyncGuard:
    """Ensures that only one synchronisation runs at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running = False

    def try_acquire(self) -> bool:
        """Mark a run as started; False if one is already running."""
        with self._lock:
            if self._running:
                return False
            self._running = True
            return True

    def release(self) -> None:
        """Mark the current run as finished."""
        with self._lock:
            self._running = False

    def running(self) -> bool:
        with self._lock:
            return self._running


def lookback_dates(days: int, today: datetime) -> list[datetime]:
    """The given number of days before today, starting with yesterday."""
    return [today - timedelta(days=offset) for offset in range(1, days + 1)]