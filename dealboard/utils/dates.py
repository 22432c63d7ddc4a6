"""
Date helpers for HubSpot values and local contest windows.

HubSpot encodes dates three ways depending on the property type:
epoch milliseconds, a plain ``YYYY-MM-DD`` date, or an ISO-8601 datetime.
Everything is normalised to naive UTC.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, List, Optional, Tuple
import pytz
from dateutil import parser as date_parser


def _parse_epoch_millis(value: str) -> Optional[datetime]:
    if not value.lstrip("-").isdigit():
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)


def _parse_iso_date(value: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return None


def _parse_iso_datetime(value: str) -> Optional[datetime]:
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# Tried in order; first non-None wins
DATE_PARSERS: List[Callable[[str], Optional[datetime]]] = [
    _parse_epoch_millis,
    _parse_iso_date,
    _parse_iso_datetime,
]


def parse_crm_datetime(value: Any) -> Optional[datetime]:
    """Parse a HubSpot date/datetime value to naive UTC, or None if unparseable"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        value = str(int(value))
    text = str(value).strip()
    if not text:
        return None

    for parser in DATE_PARSERS:
        try:
            parsed = parser(text)
        except (ValueError, OverflowError, OSError):
            parsed = None
        if parsed is not None:
            return parsed
    return None


def to_epoch_millis(value: datetime) -> int:
    """Naive UTC datetime to HubSpot epoch milliseconds"""
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def to_iso_utc(value: datetime) -> str:
    return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def local_to_utc(value: datetime, tz_name: str) -> datetime:
    """Interpret a naive local datetime in tz_name and return naive UTC"""
    localized = pytz.timezone(tz_name).localize(value)
    return localized.astimezone(pytz.UTC).replace(tzinfo=None)


def local_day_window_utc(start_day: date, end_day: date, tz_name: str) -> Tuple[datetime, datetime]:
    """
    UTC bounds for whole local days [start_day, end_day].

    The end bound is exclusive: midnight after end_day, local time.
    """
    start = local_to_utc(datetime.combine(start_day, time.min), tz_name)
    end = local_to_utc(datetime.combine(end_day + timedelta(days=1), time.min), tz_name)
    return start, end


def month_window_utc(year: int, month: int) -> Tuple[datetime, datetime]:
    """[first day of month, first day of next month) in naive UTC"""
    start = datetime(year, month, 1)
    if month == 12:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime(year, month + 1, 1)
    return start, end


def local_month_window_utc(year: int, month: int, tz_name: str) -> Tuple[datetime, datetime]:
    """A local calendar month as [start, end) in naive UTC"""
    start, end = month_window_utc(year, month)
    return local_to_utc(start, tz_name), local_to_utc(end, tz_name)


def local_now(tz_name: str) -> datetime:
    """Current wall-clock time in tz_name, naive"""
    return datetime.now(pytz.timezone(tz_name)).replace(tzinfo=None)
