from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DD" is midnight UTC of that day
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    if dt.tzinfo is None:
        return dt

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar-day range used by the read projections."""

    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError("start must not be after end")

    @property
    def start_dt(self) -> datetime:
        return datetime.combine(self.start, time.min)

    @property
    def end_dt(self) -> datetime:
        # Exclusive upper bound: midnight after the last day
        return datetime.combine(self.end + timedelta(days=1), time.min)

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    @classmethod
    def last_days(cls, days: int, today: date | None = None) -> "DateRange":
        end = today or utcnow().date()
        return cls(start=end - timedelta(days=days), end=end)


def resolve_date_range(
    start: date | str | None,
    end: date | str | None,
    *,
    default_days: int = 30,
) -> DateRange:
    """
    Build a DateRange from optional bounds.

    Both bounds missing (or either one missing) falls back to the last
    `default_days` days ending today.
    """
    if not start or not end:
        return DateRange.last_days(default_days)
    return DateRange(start=_to_date(start), end=_to_date(end))


def _to_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise ValueError("invalid date")
    return parsed.date()
