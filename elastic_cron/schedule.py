"""
Cron-style schedule expressions.

Supports the classic five field layout (minute hour day-of-month month
day-of-week), an optional leading seconds field, month and weekday names,
the ``@hourly``/``@daily``/... descriptors and ``@every <duration>``.

Fields are checked and rewritten into plain numeric tokens here; expansion
and next-time computation are delegated to croniter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from elastic_cron.errors import ScheduleSyntaxError

UTC = timezone.utc
SEARCH_YEARS = 5
MAX_SKIPPED_CANDIDATES = 10000

MONTH_NAMES = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
DAY_NAMES = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
}
DESCRIPTORS = {
    "@yearly": "0 0 0 1 1 *",
    "@annually": "0 0 0 1 1 *",
    "@monthly": "0 0 0 1 * *",
    "@weekly": "0 0 0 * * 0",
    "@daily": "0 0 0 * * *",
    "@midnight": "0 0 0 * * *",
    "@hourly": "0 0 * * * *",
}
CRON_FIELD_RE = re.compile(r"^[0-9a-z*?,/\-]+$")
DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


@dataclass(frozen=True)
class FieldSpec:
    name: str
    minimum: int
    maximum: int
    names: Dict[str, int]


SECOND = FieldSpec("second", 0, 59, {})
MINUTE = FieldSpec("minute", 0, 59, {})
HOUR = FieldSpec("hour", 0, 23, {})
DAY_OF_MONTH = FieldSpec("day-of-month", 1, 31, {})
MONTH = FieldSpec("month", 1, 12, MONTH_NAMES)
# 7 is accepted as an alias for Sunday.
DAY_OF_WEEK = FieldSpec("day-of-week", 0, 7, DAY_NAMES)
FIELDS = (SECOND, MINUTE, HOUR, DAY_OF_MONTH, MONTH, DAY_OF_WEEK)


@dataclass(frozen=True)
class CronSchedule:
    expr: str
    # Six field croniter expression, seconds last.
    cron_expr: str
    seconds: FrozenSet[int]
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    # A day field based on "*" or "?" (including "*/n") defers to the other one.
    days_any: bool
    weekdays_any: bool
    timezone: Optional[tzinfo] = None

    @property
    def day_or(self) -> bool:
        return not (self.days_any or self.weekdays_any)

    def matches(self, moment: datetime) -> bool:
        if self.timezone is not None and moment.tzinfo is not None:
            moment = moment.astimezone(self.timezone)
        return (
            moment.second in self.seconds
            and moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_after(self, after: datetime) -> Optional[datetime]:
        """Return the first matching instant strictly after ``after``.

        Naive datetimes are treated as wall-clock time. Aware datetimes are
        matched in the schedule timezone (or their own when none is set)
        and the result is aware. Returns None when nothing matches within
        the search horizon, e.g. for "0 0 31 2 *".
        """
        if after.tzinfo is None:
            return _get_next(self._iterator(after))

        tz = self.timezone or after.tzinfo
        after_utc = after.astimezone(UTC)
        iterator = self._iterator(after.astimezone(tz).replace(tzinfo=None))
        for _ in range(MAX_SKIPPED_CANDIDATES):
            wall = _get_next(iterator)
            if wall is None:
                return None
            candidate = wall.replace(tzinfo=tz, fold=0)
            # Skip DST gaps and the repeated hour of a fold.
            if not _is_nonexistent_local(candidate, tz) and candidate.astimezone(UTC) > after_utc:
                return candidate
        return None

    def _iterator(self, start: datetime) -> croniter:
        # Wall-clock iteration; timezone handling stays in next_after.
        return croniter(
            self.cron_expr,
            start,
            day_or=self.day_or,
            max_years_between_matches=SEARCH_YEARS,
        )

    def _day_matches(self, moment: datetime) -> bool:
        day_ok = moment.day in self.days
        weekday_ok = cron_weekday(moment) in self.weekdays
        if self.day_or:
            return day_ok or weekday_ok
        return day_ok and weekday_ok


@dataclass(frozen=True)
class EverySchedule:
    expr: str
    interval: timedelta

    def next_after(self, after: datetime) -> Optional[datetime]:
        return after.replace(microsecond=0) + self.interval


Schedule = Union[CronSchedule, EverySchedule]


def cron_weekday(moment: datetime) -> int:
    # datetime counts Monday as 0, cron counts Sunday as 0.
    return (moment.weekday() + 1) % 7


def parse(expr: str, tz: Optional[tzinfo] = None) -> Schedule:
    if not isinstance(expr, str) or not expr.strip():
        raise ScheduleSyntaxError(str(expr), "expression is empty")
    text = expr.strip()
    lowered = text.lower()

    if lowered.split()[0] == "@every":
        return _parse_every(expr, text[len("@every"):].strip())
    if text.startswith("@"):
        expanded = DESCRIPTORS.get(lowered)
        if expanded is None:
            raise ScheduleSyntaxError(expr, f'unknown descriptor "{text}"')
        text = expanded

    tokens = text.split()
    if len(tokens) == 5:
        tokens = ["0", *tokens]
    elif len(tokens) != 6:
        raise ScheduleSyntaxError(expr, f"expected 5 or 6 fields, got {len(tokens)}")

    checked = [validate_cron_token(token, field, expr) for token, field in zip(tokens, FIELDS)]
    cron_tokens = [token for token, _ in checked]
    # croniter keeps the seconds field last.
    cron_expr = " ".join([*cron_tokens[1:], cron_tokens[0]])
    try:
        expanded_fields, _ = croniter.expand(cron_expr)
    except CroniterBadCronError as exc:
        raise ScheduleSyntaxError(expr, str(exc)) from exc

    minutes, hours, days, months, weekdays, seconds = expanded_fields
    return CronSchedule(
        expr=expr,
        cron_expr=cron_expr,
        seconds=_field_values(seconds, 0, 59),
        minutes=_field_values(minutes, 0, 59),
        hours=_field_values(hours, 0, 23),
        days=_field_values(days, 1, 31),
        months=_field_values(months, 1, 12),
        weekdays=frozenset(value % 7 for value in _field_values(weekdays, 0, 6)),
        days_any=checked[3][1],
        weekdays_any=checked[5][1],
        timezone=tz,
    )


def validate_cron_token(token: str, field: FieldSpec, expr: str) -> Tuple[str, bool]:
    """Check one cron field and rewrite it with numbers only.

    Returns the rewritten token and whether the field is unrestricted, which
    is the case when any list item is based on ``*`` or ``?``.
    """
    lowered = token.lower()
    if not CRON_FIELD_RE.match(lowered):
        raise ScheduleSyntaxError(expr, f'invalid {field.name} field "{token}"')

    parts: List[str] = []
    unrestricted = False
    for part in lowered.split(","):
        if not part:
            raise ScheduleSyntaxError(expr, f'empty list item in {field.name} field "{token}"')
        base, has_step, step_raw = part.partition("/")
        step = 1
        if has_step:
            if not step_raw.isdigit() or int(step_raw) <= 0:
                raise ScheduleSyntaxError(expr, f'invalid step "{part}" in {field.name} field')
            step = int(step_raw)

        if base in ("*", "?"):
            unrestricted = True
            parts.append("*" if step == 1 else f"*/{step}")
            continue

        start, end = _validate_range_or_single(base, field, expr)
        if has_step and "-" not in base:
            # "a/n" runs from a to the end of the field.
            end = 6 if field is DAY_OF_WEEK else field.maximum
        parts.extend(_cron_parts(field, start, end, step))
    return ",".join(parts), unrestricted


def parse_duration(text: str) -> timedelta:
    """Parse a Go style duration such as ``1s``, ``500ms`` or ``1h30m``."""
    raw = text.strip().lower() if isinstance(text, str) else ""
    if not raw:
        raise ValueError("duration is empty")
    pos = 0
    total = timedelta()
    for match in DURATION_RE.finditer(raw):
        if match.start() != pos:
            break
        total += DURATION_UNITS[match.group(2)] * float(match.group(1))
        pos = match.end()
    if pos != len(raw):
        raise ValueError(f'invalid duration "{text}"')
    return total


def upcoming(schedule: Schedule, count: int, after: datetime) -> List[datetime]:
    runs: List[datetime] = []
    cursor = after
    while len(runs) < count:
        nxt = schedule.next_after(cursor)
        if nxt is None:
            break
        runs.append(nxt)
        cursor = nxt
    return runs


def _parse_every(expr: str, raw: str) -> EverySchedule:
    try:
        interval = parse_duration(raw)
    except ValueError as exc:
        raise ScheduleSyntaxError(expr, str(exc)) from exc
    interval = timedelta(seconds=int(interval.total_seconds()))
    if interval < timedelta(seconds=1):
        raise ScheduleSyntaxError(expr, "@every interval must be at least 1s")
    return EverySchedule(expr=expr, interval=interval)


def _validate_range_or_single(base: str, field: FieldSpec, expr: str) -> Tuple[int, int]:
    if "-" in base:
        left, right = base.split("-", 1)
        start = _parse_value(left, field, expr)
        end = _parse_value(right, field, expr)
    else:
        start = end = _parse_value(base, field, expr)

    if start < field.minimum or end > field.maximum:
        raise ScheduleSyntaxError(
            expr,
            f'"{base}" out of bounds {field.minimum}-{field.maximum} in {field.name} field',
        )
    if start > end:
        raise ScheduleSyntaxError(expr, f'invalid range "{base}" in {field.name} field')
    return start, end


def _parse_value(raw: str, field: FieldSpec, expr: str) -> int:
    if raw.isdigit():
        return int(raw)
    value = field.names.get(raw)
    if value is None:
        raise ScheduleSyntaxError(expr, f'invalid value "{raw}" in {field.name} field')
    return value


def _cron_parts(field: FieldSpec, start: int, end: int, step: int) -> List[str]:
    if field is DAY_OF_WEEK and end == 7:
        return sorted({str(value % 7) for value in range(start, end + 1, step)})
    # croniter reads "a-a" as the whole field.
    if start == end:
        return [str(start)]
    token = f"{start}-{end}"
    return [token if step == 1 else f"{token}/{step}"]


def _field_values(values: Sequence[Union[int, str]], low: int, high: int) -> FrozenSet[int]:
    if "*" in values:
        return frozenset(range(low, high + 1))
    return frozenset(int(value) for value in values)


def _get_next(iterator: croniter) -> Optional[datetime]:
    try:
        return iterator.get_next(datetime)
    except CroniterBadDateError:
        return None


def _is_nonexistent_local(local_dt: datetime, tz: tzinfo) -> bool:
    naive = local_dt.replace(tzinfo=None)
    assumed = naive.replace(tzinfo=tz, fold=0)
    roundtrip = assumed.astimezone(UTC).astimezone(tz).replace(tzinfo=None)
    return roundtrip != naive
