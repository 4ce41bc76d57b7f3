"""Time formatting helpers and injectable sources of the current time."""

from __future__ import annotations

import calendar
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

_RFC3339_PATTERN = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


def _as_utc(t: datetime) -> datetime:
    """Return ``t`` in UTC; naive datetimes are taken to be UTC already."""
    if t.tzinfo is None:
        return t.replace(tzinfo=timezone.utc)
    return t.astimezone(timezone.utc)


def unix_timestamp(t: datetime) -> int:
    """Whole seconds since the Unix epoch."""
    return calendar.timegm(_as_utc(t).utctimetuple())


def from_unix_timestamp(i: int) -> datetime:
    """A UTC datetime for the given number of seconds since the epoch."""
    return datetime.fromtimestamp(i, tz=timezone.utc)


def rfc3339(t: datetime) -> str:
    """Format ``t`` as an RFC 3339 timestamp in UTC, to whole seconds."""
    return _as_utc(t).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_rfc3339(ts: str) -> datetime:
    """Parse an RFC 3339 timestamp into a timezone-aware datetime.

    Raises ValueError when the text is not a valid timestamp.
    """
    match = _RFC3339_PATTERN.fullmatch(ts)
    if match is None:
        raise ValueError(f"cannot parse {ts!r} as an RFC 3339 time")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    if offset == "Z":
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        hours, minutes = int(offset[1:3]), int(offset[4:6])
        if hours > 23 or minutes > 59:
            raise ValueError(f"time zone offset out of range in {ts!r}")
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    microsecond = int((fraction or "0")[:6].ljust(6, "0"))
    return datetime(
        int(year),
        int(month),
        int(day),
        int(hour),
        int(minute),
        int(second),
        microsecond,
        tzinfo=tz,
    )


def y2k_time() -> datetime:
    """Midnight UTC at the turn of the millennium."""
    return parse_rfc3339("2000-01-01T00:00:00Z").astimezone(timezone.utc)


class TimeProvider(ABC):
    """A source of the current time."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time."""


class ConcreteTimeProvider(TimeProvider):
    """Reads the system clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FrozenTimeProvider(TimeProvider):
    """Always reports the same, fixed time."""

    current: datetime

    def now(self) -> datetime:
        return self.current


class Y2K(TimeProvider):
    """Always reports the turn of the millennium."""

    def now(self) -> datetime:
        return y2k_time()


@dataclass
class TimeMachine(TimeProvider):
    """Reports a fixed time that can be moved with :meth:`travel`."""

    current: datetime

    def now(self) -> datetime:
        return self.current

    def travel(self, new_time: datetime) -> None:
        self.current = new_time