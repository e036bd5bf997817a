from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional, Union
from zoneinfo import ZoneInfo

from dateutil.rrule import rrule, rruleset, rrulestr

from config import get_settings
from errors import ValidationError
from periods import month_end, month_start


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    return month_end(year, month).day


def add_months(base: date, months: int) -> date:
    """Shift ``base`` by whole months, snapping to the last day when needed."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    dim = days_in_month(year, month)
    if base.day > dim:
        day = dim
    else:
        day = base.day
    return date(year, month, day)


@dataclass(frozen=True)
class MonthActivity:
    active: bool
    amount_cents: int
    occurrence: Optional[date] = None


def parse_rule(rule: str, starts_on: date) -> Union[rrule, rruleset]:
    """Parse an RFC 5545 recurrence rule anchored at ``starts_on``.

    Raises ``ValidationError`` for anything dateutil cannot evaluate.
    """
    if not rule or not rule.strip():
        raise ValidationError("Recurrence rule cannot be empty")
    try:
        return rrulestr(rule.strip(), dtstart=datetime.combine(starts_on, time.min))
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid recurrence rule: {exc}") from exc


def month_activity(
    rule: str,
    starts_on: date,
    ends_on: Optional[date],
    year: int,
    month: int,
    amount_cents: int = 0,
) -> MonthActivity:
    first = month_start(year, month)
    last = month_end(year, month)
    if starts_on > last:
        return MonthActivity(active=False, amount_cents=0)
    if ends_on is not None and ends_on < first:
        return MonthActivity(active=False, amount_cents=0)

    parsed = parse_rule(rule, starts_on)
    # Day-granular: the first occurrence after the day before the 1st is
    # the first occurrence on or after the 1st.
    try:
        nxt = parsed.after(datetime.combine(first, time.min), inc=True)
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid recurrence rule: {exc}") from exc
    if nxt is None:
        return MonthActivity(active=False, amount_cents=0)

    occurrence = nxt.date()
    if ends_on is not None and occurrence > ends_on:
        return MonthActivity(active=False, amount_cents=0)
    if (occurrence.year, occurrence.month) != (year, month):
        return MonthActivity(active=False, amount_cents=0)
    return MonthActivity(active=True, amount_cents=amount_cents, occurrence=occurrence)
