"""
Cron expressions with second precision.

Six fields: second minute hour day-of-month month day-of-week.
Five-field expressions are accepted and run at second 0.

Each field supports "*", "a", "a-b", "a/step", "a-b/step", "*/step" and
comma separated lists of those. Day-of-week is 0-7 with both 0 and 7 meaning
Sunday. When both day fields are restricted a day matches if either does,
which is the classic cron rule.
"""
import bisect
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Union

from cronqueue.domain.errors import DefinitionError, ScheduleOverflowError

HORIZON_YEARS = 5
MAX_ITERATIONS = 100_000

# name, lowest, highest
_FIELDS = (
    ("second", 0, 59),
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 7),
)


@dataclass(frozen=True)
class CronField:
    values: tuple[int, ...]
    lookup: frozenset[int]

    def __contains__(self, value: int) -> bool:
        return value in self.lookup

    @property
    def first(self) -> int:
        return self.values[0]

    def next_from(self, value: int) -> Optional[int]:
        """Smallest allowed value >= `value`, or None if the field has to wrap."""
        index = bisect.bisect_left(self.values, value)
        if index < len(self.values):
            return self.values[index]
        return None


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    seconds: CronField
    minutes: CronField
    hours: CronField
    days: CronField
    months: CronField
    weekdays: CronField
    dom_wildcard: bool
    dow_wildcard: bool

    def matches(self, instant: datetime) -> bool:
        return matches(self, instant)

    def next_after(self, instant: datetime) -> datetime:
        return next_match(self, instant)


def normalize(expression: str) -> str:
    """Returns the six-field form of a five or six field expression."""
    tokens = expression.split()
    if len(tokens) == 5:
        tokens.insert(0, "0")
    if len(tokens) != 6:
        raise DefinitionError(f"Invalid cron expression '{expression}': expected 5 or 6 fields")
    return " ".join(tokens)


def replace_field(expression: Optional[str], index: int, value: Union[int, str, Iterable[int]]) -> str:
    """Rewrites one field of a six-field expression (0 = seconds ... 4 = months)."""
    tokens = normalize(expression or "0 0 0 * * *").split()
    if isinstance(value, (list, tuple, set, frozenset)):
        value = ",".join(str(v) for v in sorted(value))
    tokens[index] = str(value)
    return " ".join(tokens)


def parse(expression: str) -> CronSchedule:
    tokens = normalize(expression).split()
    fields = [
        _expand(token, name, low, high, is_dow=(name == "day of week"))
        for token, (name, low, high) in zip(tokens, _FIELDS)
    ]
    return CronSchedule(
        " ".join(tokens),
        *fields,
        dom_wildcard=tokens[3] == "*",
        dow_wildcard=tokens[5] == "*",
    )


def matches(schedule: CronSchedule, instant: datetime) -> bool:
    if instant.second not in schedule.seconds:
        return False
    if instant.minute not in schedule.minutes:
        return False
    if instant.hour not in schedule.hours:
        return False
    if instant.month not in schedule.months:
        return False
    return _day_matches(schedule, instant)


def next_match(schedule: CronSchedule, after: datetime) -> datetime:
    """
    Earliest instant strictly after `after` (at whole-second resolution)
    that matches the schedule.

    Walks month -> day -> hour -> minute -> second, and each time a field does
    not match it jumps to the next allowed value of that field and resets the
    finer fields, so the number of steps depends on the shape of the
    expression and not on the distance to the match.

    Raises:
        ScheduleOverflowError: nothing matches within HORIZON_YEARS.
    """
    current = after.replace(microsecond=0) + timedelta(seconds=1)
    limit_year = current.year + HORIZON_YEARS

    for _ in range(MAX_ITERATIONS):
        if current.year > limit_year:
            raise ScheduleOverflowError(
                f"No match for '{schedule.expression}' within {HORIZON_YEARS} years of {after.isoformat()}"
            )

        if current.month not in schedule.months:
            month = schedule.months.next_from(current.month)
            if month is None:
                current = current.replace(
                    year=current.year + 1, month=schedule.months.first, day=1, hour=0, minute=0, second=0
                )
            else:
                current = current.replace(month=month, day=1, hour=0, minute=0, second=0)
            continue

        if not _day_matches(schedule, current):
            current = _start_of_day(current) + timedelta(days=1)
            continue

        if current.hour not in schedule.hours:
            hour = schedule.hours.next_from(current.hour)
            if hour is None:
                current = _start_of_day(current) + timedelta(days=1)
            else:
                current = current.replace(hour=hour, minute=0, second=0)
            continue

        if current.minute not in schedule.minutes:
            minute = schedule.minutes.next_from(current.minute)
            if minute is None:
                current = current.replace(minute=0, second=0) + timedelta(hours=1)
            else:
                current = current.replace(minute=minute, second=0)
            continue

        if current.second not in schedule.seconds:
            second = schedule.seconds.next_from(current.second)
            if second is None:
                current = current.replace(second=0) + timedelta(minutes=1)
            else:
                current = current.replace(second=second)
            continue

        return current

    raise ScheduleOverflowError(f"No match for '{schedule.expression}' within {MAX_ITERATIONS} steps")


def _day_matches(schedule: CronSchedule, instant: datetime) -> bool:
    in_dom = instant.day in schedule.days
    # isoweekday: Monday=1 .. Sunday=7, cron wants Sunday=0
    in_dow = (instant.isoweekday() % 7) in schedule.weekdays

    if schedule.dom_wildcard and schedule.dow_wildcard:
        return True
    if schedule.dom_wildcard:
        return in_dow
    if schedule.dow_wildcard:
        return in_dom
    return in_dom or in_dow


def _start_of_day(instant: datetime) -> datetime:
    return instant.replace(hour=0, minute=0, second=0, microsecond=0)


def _expand(token: str, name: str, low: int, high: int, is_dow: bool = False) -> CronField:
    values: set[int] = set()

    for part in token.split(","):
        if not part:
            raise DefinitionError(f"Empty list item in {name} field '{token}'")

        if "/" in part:
            span, step_text = part.split("/", 1)
            step = _number(step_text, name)
            if step < 1:
                raise DefinitionError(f"Step must be positive in {name} field '{token}'")
        else:
            span, step = part, 1

        if span == "*":
            start, end = low, high
        elif "-" in span:
            left, right = span.split("-", 1)
            start, end = _number(left, name), _number(right, name)
        else:
            start = _number(span, name)
            # "a/step" runs from a to the end of the range
            end = high if "/" in part else start

        if start < low or end > high or start > end:
            raise DefinitionError(f"Value out of range in {name} field '{token}' (allowed {low}-{high})")

        values.update(range(start, end + 1, step))

    if is_dow and 7 in values:
        values.discard(7)
        values.add(0)

    ordered = tuple(sorted(values))
    return CronField(ordered, frozenset(ordered))


def _number(text: str, name: str) -> int:
    if not text.isdigit():
        raise DefinitionError(f"Invalid {name} value '{text}'")
    return int(text)
