"""Local timestamp parsing and timezone conversion for sensor exports.

Exports carry wall-clock timestamps without an offset. They are kept as
local strings for display and day/minute bucketing, and converted to UTC
instants with the building's IANA timezone.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

LOCAL_TIMESTAMP_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2}):(\d{2})$")

MINUTES_PER_DAY = 24 * 60


class TemperatureError(Exception):
    """Base error for the temperature pipeline."""

    pass


class InvalidTimezoneError(TemperatureError, ValueError):
    """Raised when a building timezone is not a known IANA zone."""

    pass


class InvalidDateRangeError(TemperatureError, ValueError):
    """Raised when a date range is malformed or inverted."""

    pass


@dataclass(frozen=True)
class LocalTimestamp:
    """A wall-clock timestamp with no zone attached."""

    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int

    @property
    def raw(self) -> str:
        """Canonical ``YYYY-MM-DD HH:MM:SS`` form."""
        return (
            f"{self.year:04d}-{self.month:02d}-{self.day:02d} "
            f"{self.hour:02d}:{self.minute:02d}:{self.second:02d}"
        )

    @property
    def date_key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"

    @property
    def minute_of_day(self) -> int:
        return self.hour * 60 + self.minute

    def to_naive(self) -> datetime:
        return datetime(self.year, self.month, self.day, self.hour, self.minute, self.second)


def parse_local_timestamp(value: str | None) -> LocalTimestamp | None:
    """Parse a strict ``YYYY-MM-DD HH:MM:SS`` timestamp.

    Anything else (other separators, missing seconds, impossible dates)
    returns None rather than being guessed at.
    """
    if not value:
        return None
    match = LOCAL_TIMESTAMP_RE.match(value.strip())
    if not match:
        return None
    year, month, day, hour, minute, second = (int(part) for part in match.groups())
    try:
        datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None
    return LocalTimestamp(year, month, day, hour, minute, second)


def is_valid_timezone(name: str | None) -> bool:
    """Return True when ``name`` resolves to an IANA zone."""
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def get_zone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for ``name`` or raise InvalidTimezoneError."""
    if not is_valid_timezone(name):
        raise InvalidTimezoneError(f"Invalid timezone: {name!r}")
    return ZoneInfo(name)


def zoned_time_to_utc(parts: LocalTimestamp | None, tz_name: str | None) -> datetime | None:
    """Resolve a local wall-clock time in ``tz_name`` to an aware UTC datetime.

    Ambiguous times (DST fall-back) resolve to the first occurrence; times in
    a DST gap resolve with the offset in effect before the transition.
    """
    if parts is None or not tz_name:
        return None
    zone = get_zone(tz_name)
    local = parts.to_naive().replace(tzinfo=zone)
    return local.astimezone(timezone.utc)


def local_date_to_utc(date_local: str, hour: int, tz_name: str) -> datetime | None:
    """UTC instant for ``date_local`` (``YYYY-MM-DD``) at ``hour``:00 local time."""
    try:
        year, month, day = (int(part) for part in date_local.split("-"))
    except ValueError:
        return None
    return zoned_time_to_utc(LocalTimestamp(year, month, day, hour, 0, 0), tz_name)


def format_date_in_timezone(value: datetime | None, tz_name: str) -> str:
    """``YYYY-MM-DD`` of an instant as seen in ``tz_name``."""
    if value is None:
        return ""
    return ensure_utc(value).astimezone(get_zone(tz_name)).strftime("%Y-%m-%d")


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalize aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_utc(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 UTC string stored inside sample JSON."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def format_minutes(minutes: int) -> str:
    """Render minutes since midnight as ``h:MM AM/PM``."""
    hours, mins = divmod(int(minutes) % MINUTES_PER_DAY, 60)
    suffix = "AM" if hours < 12 else "PM"
    display_hour = hours % 12 or 12
    return f"{display_hour}:{mins:02d} {suffix}"


def parse_time_of_day(value: str) -> int | None:
    """Parse ``HH:MM`` (24h) into minutes since midnight."""
    match = re.match(r"^(\d{1,2}):(\d{2})$", (value or "").strip())
    if not match:
        return None
    hours, mins = int(match.group(1)), int(match.group(2))
    if hours > 23 or mins > 59:
        return None
    return hours * 60 + mins


def parse_date_key(value: str | None) -> str | None:
    """Validate a ``YYYY-MM-DD`` date and return it unchanged, or None."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").strftime("%Y-%m-%d")
    except ValueError:
        return None


def validate_date_range(start: str | None, end: str | None) -> tuple[str, str]:
    """Return a validated ``(start, end)`` pair of local dates, start <= end."""
    start_key = parse_date_key(start)
    end_key = parse_date_key(end)
    if start_key is None or end_key is None:
        raise InvalidDateRangeError("Start and end dates must be YYYY-MM-DD")
    if start_key > end_key:
        raise InvalidDateRangeError("Start date must be before end date")
    return start_key, end_key
