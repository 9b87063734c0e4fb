"""Time window resolution.

Maps a period token (today|week|month|year|custom) to a concrete half-open
``[start, end)`` interval shared by every query in a request. week, month
and year are rolling 7/30/365-day windows ending now, not calendar-aligned
periods, so consecutive trend windows stay comparable.
"""
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import InvalidRangeError

logger = logging.getLogger(__name__)


class Period(Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, token: Union[str, "Period"]) -> "Period":
        if isinstance(token, Period):
            return token
        try:
            return cls(str(token).strip().lower())
        except ValueError:
            raise InvalidRangeError(f"Unknown period: {token!r}")


ROLLING_DAYS = {
    Period.WEEK: 7,
    Period.MONTH: 30,
    Period.YEAR: 365,
}


def _aware(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)`` with timezone-aware bounds."""
    start: datetime
    end: datetime
    period: Period = Period.CUSTOM

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise InvalidRangeError("Window bounds must be timezone-aware")
        if self.start > self.end:
            raise InvalidRangeError(
                f"Window start {self.start.isoformat()} is after end {self.end.isoformat()}"
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def days(self) -> int:
        """Length in whole days, rounded up; the REST ``days`` parameter."""
        return max(1, math.ceil(self.duration.total_seconds() / 86400))

    @property
    def key(self) -> str:
        """Stable memo key for this window."""
        return f"{self.period.value}:{self.start.isoformat()}:{self.end.isoformat()}"

    @property
    def as_of(self) -> datetime:
        """Last instant inside the window; ``end`` itself is excluded."""
        if self.end == self.start:
            return self.start
        return self.end - timedelta(microseconds=1)

    def contains(self, instant: datetime) -> bool:
        return self.start <= _aware(instant) < self.end

    def split(self, n: int) -> List["TimeWindow"]:
        """Partition into ``n`` equal consecutive sub-windows.

        The last sub-window ends exactly at ``end`` so no instant is lost
        to rounding.
        """
        if n < 1:
            raise ValueError(f"Cannot split a window into {n} parts")
        step = self.duration / n
        bounds = [self.start + step * i for i in range(n)] + [self.end]
        return [
            TimeWindow(start=bounds[i], end=bounds[i + 1], period=Period.CUSTOM)
            for i in range(n)
        ]

    def previous(self) -> "TimeWindow":
        """Window of the same length ending where this one starts."""
        return TimeWindow(
            start=self.start - self.duration,
            end=self.start,
            period=self.period,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period.value,
            "start_date": self.start.isoformat(),
            "end_date": self.end.isoformat(),
            "days": self.days,
        }


def resolve_timezone(tz: Union[str, tzinfo, None]) -> tzinfo:
    if tz is None:
        return timezone.utc
    if isinstance(tz, tzinfo):
        return tz
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidRangeError(f"Unknown time zone: {tz!r}")


def _midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def _coerce_bound(value: Any, tz: tzinfo, is_end: bool) -> datetime:
    """Turn a custom-range bound into an instant.

    Dates cover whole days in the viewer's zone: a ``to`` date includes
    that entire day.
    """
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                value = date.fromisoformat(text)
            else:
                if text.endswith("Z"):
                    text = text[:-1] + "+00:00"
                value = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidRangeError(f"Unparseable date: {value!r}")

    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)
    if isinstance(value, date):
        day = value + timedelta(days=1) if is_end else value
        return _midnight(day, tz)
    raise InvalidRangeError(f"Unsupported date bound: {value!r}")


def resolve_window(
    period: Union[str, Period],
    date_from: Any = None,
    date_to: Any = None,
    now: Optional[datetime] = None,
    tz: Union[str, tzinfo, None] = None,
) -> TimeWindow:
    """Resolve a period request into a concrete window.

    Args:
        period: today|week|month|year|custom
        date_from: Start of a custom range (date, datetime or ISO string)
        date_to: End of a custom range, inclusive when given as a date
        now: Reference instant (defaults to the current time)
        tz: Viewer time zone name or tzinfo (defaults to UTC)

    Returns:
        TimeWindow

    Raises:
        InvalidRangeError: Unknown period, missing custom bound, from > to
    """
    resolved = Period.parse(period)
    zone = resolve_timezone(tz)
    current = now if now is not None else datetime.now(zone)
    if current.tzinfo is None:
        current = current.replace(tzinfo=zone)

    if resolved is Period.TODAY:
        local_day = current.astimezone(zone).date()
        window = TimeWindow(
            start=_midnight(local_day, zone),
            end=_midnight(local_day + timedelta(days=1), zone),
            period=resolved,
        )
    elif resolved is Period.CUSTOM:
        if date_from is None or date_to is None:
            logger.warning(
                "CUSTOM_RANGE_REJECTED",
                extra={"reason": "missing_bound", "has_from": date_from is not None,
                       "has_to": date_to is not None}
            )
            raise InvalidRangeError("Custom range requires both 'from' and 'to'")
        start = _coerce_bound(date_from, zone, is_end=False)
        end = _coerce_bound(date_to, zone, is_end=True)
        if start > end:
            logger.warning(
                "CUSTOM_RANGE_REJECTED",
                extra={"reason": "from_after_to", "from": start.isoformat(),
                       "to": end.isoformat()}
            )
            raise InvalidRangeError(
                f"Range start {start.isoformat()} is after end {end.isoformat()}"
            )
        window = TimeWindow(start=start, end=end, period=resolved)
    else:
        window = TimeWindow(
            start=current - timedelta(days=ROLLING_DAYS[resolved]),
            end=current,
            period=resolved,
        )

    logger.debug("WINDOW_RESOLVED", extra=window.to_dict())
    return window
