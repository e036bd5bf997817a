from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def month_period(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    return Period("month", month_start(year, month), month_end(year, month))


def year_period(year: int) -> Period:
    return Period("year", date(year, 1, 1), date(year, 12, 31))


def trailing_days(days: int, *, today: date) -> Period:
    return Period("trailing", today - timedelta(days=days), today)


def resolve_period(
    year: Optional[int],
    month: Optional[int],
    *,
    today: date,
    default_days: int = 30,
) -> Period:
    if month is not None and year is None:
        raise ValueError("Filtering by month requires a year")
    if year is not None and month is not None:
        return month_period(year, month)
    if year is not None:
        return year_period(year)
    return trailing_days(default_days, today=today)
