"""Calendar-month settlement periods ("YYYY-MM")."""
import calendar
import re
from datetime import date, timedelta
from typing import Tuple

from fuelops.core.exceptions import ValidationError

PERIOD_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def parse_period(period: str) -> Tuple[int, int]:
    """Return (year, month) or raise ValidationError."""
    match = PERIOD_PATTERN.match(period or "")
    if not match:
        raise ValidationError(f"Invalid period '{period}', expected YYYY-MM", {"period": period})
    return int(match.group(1)), int(match.group(2))


def period_bounds(period: str) -> Tuple[date, date]:
    """First and last calendar day of the period."""
    year, month = parse_period(period)
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def days_in_period(period: str) -> int:
    start, end = period_bounds(period)
    return (end - start).days + 1


def period_of(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def previous_period(period: str) -> str:
    start, _ = period_bounds(period)
    return period_of(start - timedelta(days=1))


def iter_days(start: date, end: date):
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)
