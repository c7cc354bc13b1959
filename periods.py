import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import InvalidInput

_ISO_DAY = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def parse_local_date(value: Union[str, date, datetime]) -> date:
    """Normalize user input to a calendar day.

    ``"2025-03-14"`` is always day 14 of March 2025: the leading
    ``YYYY-MM-DD`` of a string is taken literally and never shifted by the
    server timezone. Datetimes give their own wall-clock day, so an aware
    datetime and its ISO string always agree.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise InvalidInput("Invalid date", field="date")
    match = _ISO_DAY.match(value.strip())
    if not match:
        raise InvalidInput("Invalid date", field="date")
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise InvalidInput("Invalid date", field="date") from exc


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def days_in_month(year: int, month: int) -> int:
    return month_end(year, month).day


def first_instant_of_month(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom" or (not period and (start or end)):
        if not start or not end:
            raise InvalidInput("Custom period requires start and end dates")
        start_date = parse_local_date(start)
        end_date = parse_local_date(end)
        if start_date > end_date:
            raise InvalidInput("Start date must be before end date", field="start")
        return Period("custom", start_date, end_date)

    # this month
    return Period(
        "this_month",
        month_start(today.year, today.month),
        month_end(today.year, today.month),
    )
