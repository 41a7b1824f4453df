"""Recurring time-range resolution for maintenance schedules.

A schedule's ranges map a *day rule* (which calendar days) to *time ranges*
(which hours of those days). The resolver turns one such pair into the
nearest concrete segment at or after a reference instant.

Supported day rules (case-insensitive):
- ``monday`` .. ``sunday`` and weekday spans such as ``monday - friday``
- ``day 15``, ``day -1`` (last day) and spans such as ``day 1 - 7``
- ``tuesday 2``, ``friday -1`` (n-th / n-th last weekday of the month)
- ``january 1``, ``february -1`` and spans such as ``december 24 - 26``
- ``2024-12-24`` and ``2024-12-24 - 2025-01-02``
- any of the above followed by ``/ N`` to match every N-th day of a span

Time ranges are comma separated ``HH:MM-HH:MM`` pieces; ``24:00`` is a valid
end and an end that is not after its begin spans midnight.
"""

import calendar
import functools
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import List, Optional, Tuple, Union
import zoneinfo

from .models import SchedulingError, Segment


logger = logging.getLogger(__name__)

# Four years and a day, so that yearly rules on february 29 always resolve
MAX_SEARCH_DAYS = 4 * 366 + 1

SECONDS_PER_DAY = 86400

WEEKDAYS = {
    'monday': 0,
    'tuesday': 1,
    'wednesday': 2,
    'thursday': 3,
    'friday': 4,
    'saturday': 5,
    'sunday': 6,
}

MONTHS = {name.lower(): number for number, name in enumerate(calendar.month_name) if name}

# Longest each month can be (february in leap years)
_MAX_MONTH_DAYS = {month: calendar.monthrange(2000, month)[1] for month in range(1, 13)}

_SPAN_SEPARATOR = re.compile(r'\s+-\s+')
_ISO_DATE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_INTEGER = re.compile(r'^-?\d+$')
_TIME_RANGE = re.compile(
    r'^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*-\s*(\d{1,2}):(\d{2})(?::(\d{2}))?$'
)


class RangeParseError(SchedulingError):
    """Exception raised when a day rule or time range cannot be parsed."""
    pass


# --- Calendar helpers ---


def _days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _to_zone(tz: Union[str, tzinfo]) -> tzinfo:
    if isinstance(tz, tzinfo):
        return tz
    try:
        return zoneinfo.ZoneInfo(tz)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError):
        raise RangeParseError(f"Invalid timezone: {tz}")


def _local_instant(day: date, seconds: int, zone: tzinfo) -> datetime:
    """Convert a local wall-clock time on ``day`` to a UTC instant.

    Ambiguous times (DST fold) resolve to the first occurrence; times that
    fall into a DST gap are pushed forward by the UTC round trip.
    """
    extra_days, seconds = divmod(seconds, SECONDS_PER_DAY)
    day = day + timedelta(days=extra_days)
    wall = time(seconds // 3600, seconds % 3600 // 60, seconds % 60)
    aware = datetime.combine(day, wall).replace(tzinfo=zone, fold=0)
    return datetime.fromtimestamp(aware.timestamp(), tz=timezone.utc)


# --- Day specifications inside a month ---


@dataclass(frozen=True)
class DayOfMonth:
    """``day N``: N-th day of the month, counted from the end when negative."""

    number: int

    def resolve(self, year: int, month: int) -> Optional[date]:
        last = _days_in_month(year, month)
        if abs(self.number) > last:
            return None
        day = self.number if self.number > 0 else last + self.number + 1
        return date(year, month, day)


@dataclass(frozen=True)
class NthWeekday:
    """``tuesday 2``: N-th weekday of the month, counted from the end when negative."""

    weekday: int
    number: int

    def resolve(self, year: int, month: int) -> Optional[date]:
        if self.number > 0:
            first = date(year, month, 1)
            day = first + timedelta(days=(self.weekday - first.weekday()) % 7 + 7 * (self.number - 1))
        else:
            last = date(year, month, _days_in_month(year, month))
            day = last - timedelta(days=(last.weekday() - self.weekday) % 7 + 7 * (-self.number - 1))
        if day.month != month:
            return None
        return day


MonthDaySpec = Union[DayOfMonth, NthWeekday]


# --- Day rules ---


class DayRule(ABC):
    """Set of calendar days, grouped into span occurrences.

    A day matches when it lies inside an occurrence of the span and its
    offset from the occurrence's first day is a multiple of the stride.
    """

    stride: int = 1

    first_day: Optional[date] = None
    last_day: Optional[date] = None

    @abstractmethod
    def occurrence_start(self, day: date) -> Optional[date]:
        """Return the first day of the occurrence containing ``day``, if any."""
        pass

    def matches(self, day: date) -> bool:
        start = self.occurrence_start(day)
        if start is None:
            return False
        return (day - start).days % self.stride == 0


@dataclass(frozen=True)
class WeekdaySpan(DayRule):
    begin: int
    end: int
    stride: int = 1

    def occurrence_start(self, day: date) -> Optional[date]:
        offset = (day.weekday() - self.begin) % 7
        if offset > (self.end - self.begin) % 7:
            return None
        return day - timedelta(days=offset)


@dataclass(frozen=True)
class MonthlySpan(DayRule):
    begin: MonthDaySpec
    end: MonthDaySpec
    stride: int = 1

    def occurrence_start(self, day: date) -> Optional[date]:
        # A span that wraps past the month end may have started last month
        for delta in (-1, 0):
            year, month = _shift_month(day.year, day.month, delta)
            start = self.begin.resolve(year, month)
            if start is None:
                continue
            stop = self.end.resolve(year, month)
            if stop is None or stop < start:
                stop = self.end.resolve(*_shift_month(year, month, 1))
            if stop is not None and start <= day <= stop:
                return start
        return None


@dataclass(frozen=True)
class YearlySpan(DayRule):
    begin_month: int
    begin: MonthDaySpec
    end_month: int
    end: MonthDaySpec
    stride: int = 1

    def occurrence_start(self, day: date) -> Optional[date]:
        for year in (day.year - 1, day.year):
            start = self.begin.resolve(year, self.begin_month)
            if start is None:
                continue
            stop = self.end.resolve(year, self.end_month)
            if stop is None or stop < start:
                stop = self.end.resolve(year + 1, self.end_month)
            if stop is not None and start <= day <= stop:
                return start
        return None


@dataclass(frozen=True)
class AbsoluteSpan(DayRule):
    begin: date
    end: Optional[date]
    stride: int = 1

    @property
    def first_day(self) -> Optional[date]:
        return self.begin

    @property
    def last_day(self) -> Optional[date]:
        return self.end

    def occurrence_start(self, day: date) -> Optional[date]:
        if day < self.begin or (self.end is not None and day > self.end):
            return None
        return self.begin


# --- Parsing ---


@dataclass(frozen=True)
class _DayPoint:
    kind: str
    weekday: Optional[int] = None
    month: Optional[int] = None
    spec: Optional[MonthDaySpec] = None
    value: Optional[date] = None


def _parse_int(token: str, text: str) -> int:
    if not _INTEGER.match(token):
        raise RangeParseError(f"Invalid number '{token}' in '{text}'")
    return int(token)


def _parse_day_point(text: str, previous: Optional[_DayPoint] = None) -> _DayPoint:
    tokens = text.split()
    if not tokens:
        raise RangeParseError("Empty day specification")

    # "day 1 - 15" / "january 1 - 15": the end only repeats the number
    if previous is not None and len(tokens) == 1 and _INTEGER.match(tokens[0]):
        if previous.kind == 'monthday':
            return _parse_day_point(f"day {tokens[0]}")
        if previous.kind == 'yearday':
            month_name = calendar.month_name[previous.month].lower()
            return _parse_day_point(f"{month_name} {tokens[0]}")

    head = tokens[0].lower()

    if len(tokens) == 1:
        if head in WEEKDAYS:
            return _DayPoint(kind='weekday', weekday=WEEKDAYS[head])
        if _ISO_DATE.match(head):
            try:
                return _DayPoint(kind='date', value=date.fromisoformat(head))
            except ValueError as e:
                raise RangeParseError(f"Invalid date '{head}': {e}")

    if len(tokens) == 2:
        if head == 'day':
            number = _parse_int(tokens[1], text)
            if number == 0 or abs(number) > 31:
                raise RangeParseError(f"Day of month out of range in '{text}'")
            return _DayPoint(kind='monthday', spec=DayOfMonth(number))
        if head in WEEKDAYS:
            number = _parse_int(tokens[1], text)
            if number == 0 or abs(number) > 5:
                raise RangeParseError(f"Weekday occurrence out of range in '{text}'")
            return _DayPoint(kind='monthday', spec=NthWeekday(WEEKDAYS[head], number))
        if head in MONTHS:
            month = MONTHS[head]
            number = _parse_int(tokens[1], text)
            if number == 0 or abs(number) > _MAX_MONTH_DAYS[month]:
                raise RangeParseError(f"Day out of range for {calendar.month_name[month]} in '{text}'")
            return _DayPoint(kind='yearday', month=month, spec=DayOfMonth(number))

    raise RangeParseError(f"Unknown day specification '{text}'")


def _parse_stride(text: str, key: str) -> int:
    stride = text.strip()
    if not _INTEGER.match(stride) or int(stride) < 1:
        raise RangeParseError(f"Invalid stride '{stride}' in '{key}'")
    return int(stride)


@functools.lru_cache(maxsize=1024)
def parse_day_rule(key: str) -> DayRule:
    """Parse a range key into a day rule.

    Raises:
        RangeParseError: If the key is not a valid day rule
    """
    if not isinstance(key, str) or not key.strip():
        raise RangeParseError("Empty time specification")

    parts = key.split('/')
    if len(parts) > 2:
        raise RangeParseError(f"Multiple strides in '{key}'")

    stride = _parse_stride(parts[1], key) if len(parts) == 2 else None
    bounds = _SPAN_SEPARATOR.split(parts[0].strip())
    if len(bounds) > 2:
        raise RangeParseError(f"Too many range separators in '{key}'")

    begin = _parse_day_point(bounds[0])
    end = _parse_day_point(bounds[1], previous=begin) if len(bounds) == 2 else begin

    if begin.kind != end.kind:
        raise RangeParseError(f"Cannot combine '{bounds[0]}' and '{bounds[1]}' in one range")

    if begin.kind == 'weekday':
        return WeekdaySpan(begin=begin.weekday, end=end.weekday, stride=stride or 1)

    if begin.kind == 'monthday':
        return MonthlySpan(begin=begin.spec, end=end.spec, stride=stride or 1)

    if begin.kind == 'yearday':
        return YearlySpan(
            begin_month=begin.month,
            begin=begin.spec,
            end_month=end.month,
            end=end.spec,
            stride=stride or 1
        )

    if end.value < begin.value:
        raise RangeParseError(f"Range end before range begin in '{key}'")

    # A lone date with a stride repeats forever
    if len(bounds) == 1 and stride is not None:
        return AbsoluteSpan(begin=begin.value, end=None, stride=stride)

    return AbsoluteSpan(begin=begin.value, end=end.value, stride=stride or 1)


# --- Time ranges ---


@dataclass(frozen=True)
class TimeRange:
    """Time-of-day interval, in seconds since local midnight."""

    start: int
    end: int

    @property
    def spans_midnight(self) -> bool:
        return self.end <= self.start

    def expand(self, day: date, zone: tzinfo) -> Segment:
        """Anchor the range on a calendar day."""
        end = self.end + SECONDS_PER_DAY if self.spans_midnight else self.end
        return Segment(
            begin=_local_instant(day, self.start, zone),
            end=_local_instant(day, end, zone)
        )


def _clock_seconds(hours: str, minutes: str, seconds: Optional[str], piece: str, allow_midnight_end: bool) -> int:
    h, m, s = int(hours), int(minutes), int(seconds or 0)
    if h == 24 and m == 0 and s == 0 and allow_midnight_end:
        return SECONDS_PER_DAY
    if h > 23 or m > 59 or s > 59:
        raise RangeParseError(f"Invalid time of day in '{piece}'")
    return h * 3600 + m * 60 + s


@functools.lru_cache(maxsize=1024)
def parse_time_ranges(value: str) -> Tuple[TimeRange, ...]:
    """Parse a comma separated list of ``HH:MM-HH:MM`` ranges.

    Raises:
        RangeParseError: If any piece is malformed
    """
    if not isinstance(value, str) or not value.strip():
        raise RangeParseError("No time ranges given")

    ranges = []
    for piece in value.split(','):
        piece = piece.strip()
        match = _TIME_RANGE.match(piece)
        if not match:
            raise RangeParseError(f"Invalid time range '{piece}'. Expected HH:MM-HH:MM")

        start = _clock_seconds(match.group(1), match.group(2), match.group(3), piece, False)
        end = _clock_seconds(match.group(4), match.group(5), match.group(6), piece, True)

        if end == start:
            raise RangeParseError(f"Empty time range '{piece}'")

        ranges.append(TimeRange(start=start, end=end))

    return tuple(ranges)


# --- Resolvers ---


class RangeResolver(ABC):
    """Resolves a recurring range definition into concrete segments."""

    @abstractmethod
    def parse_day_rule(self, key: str) -> DayRule:
        """Parse a range key.

        Raises:
            RangeParseError: If the key is invalid
        """
        pass

    @abstractmethod
    def parse_time_ranges(self, value: str) -> List[TimeRange]:
        """Parse a range value.

        Raises:
            RangeParseError: If the value is invalid
        """
        pass

    def expand_time_ranges(self, value: str, day: date, tz: Union[str, tzinfo] = 'UTC') -> List[Segment]:
        """Expand a range value on a single calendar day."""
        zone = _to_zone(tz)
        return [time_range.expand(day, zone) for time_range in self.parse_time_ranges(value)]

    @abstractmethod
    def resolve(
        self,
        key: str,
        value: str,
        reference: datetime,
        tz: Union[str, tzinfo] = 'UTC'
    ) -> Optional[Segment]:
        """Find the nearest segment beginning at or after ``reference``.

        Returns:
            The segment, or None if no day within the search horizon matches
        """
        pass


class LegacyRangeResolver(RangeResolver):
    """Resolver for the weekday / day-of-month / date range grammar."""

    def __init__(self, max_search_days: int = MAX_SEARCH_DAYS):
        self.max_search_days = max_search_days

    def parse_day_rule(self, key: str) -> DayRule:
        return parse_day_rule(key)

    def parse_time_ranges(self, value: str) -> List[TimeRange]:
        return list(parse_time_ranges(value))

    def resolve(
        self,
        key: str,
        value: str,
        reference: datetime,
        tz: Union[str, tzinfo] = 'UTC'
    ) -> Optional[Segment]:
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)

        rule = self.parse_day_rule(key)
        time_ranges = self.parse_time_ranges(value)
        zone = _to_zone(tz)

        # Start a day early: a range spanning midnight may have begun yesterday
        day = reference.astimezone(zone).date() - timedelta(days=1)
        horizon = day + timedelta(days=self.max_search_days)

        if rule.first_day is not None and rule.first_day > day:
            day = rule.first_day

        while day <= horizon:
            if rule.last_day is not None and day > rule.last_day:
                break

            if rule.matches(day):
                # A window lying entirely inside a DST gap collapses to nothing
                candidates = [
                    segment for segment in (time_range.expand(day, zone) for time_range in time_ranges)
                    if segment.begin >= reference and segment.end > segment.begin
                ]
                if candidates:
                    return min(candidates, key=lambda segment: segment.begin)

            day += timedelta(days=1)

        logger.debug(f"No segment for '{key}': '{value}' within {self.max_search_days} days of {reference.isoformat()}")
        return None
