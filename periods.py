from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import END_OF_MONTH


@dataclass(frozen=True)
class BillingWindow:
    start: date
    end: date
    label: str


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    return d.replace(day=days_in_month(d.year, d.month))


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def previous_month(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def month_label(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def parse_month(value: str) -> tuple[int, int]:
    """Parse a ``YYYY-MM`` token."""
    parts = value.strip().split("-")
    if len(parts) != 2 or len(parts[0]) != 4 or len(parts[1]) != 2:
        raise ValueError("Invalid month format (YYYY-MM)")
    try:
        year = int(parts[0])
        month = int(parts[1])
    except ValueError as exc:
        raise ValueError("Invalid month format (YYYY-MM)") from exc
    if not 1 <= month <= 12:
        raise ValueError("Invalid month format (YYYY-MM)")
    return year, month


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def resolve_billing_window(
    year: int, month: int, start_day: int, end_day: int
) -> BillingWindow:
    """
    Concrete inclusive date range of the billing cycle that ends in the
    given month.

    ``end_day == 0`` means the last day of the month. Both days are clamped to
    the length of the month they land in, so day 31 in February becomes the
    28th/29th rather than rolling into March. When the start day is after the
    end day the cycle begins in the previous month.
    """
    if not 1 <= start_day <= 31:
        raise ValueError("Billing cycle start day must be between 1 and 31")
    if not 0 <= end_day <= 31:
        raise ValueError("Billing cycle end day must be between 0 and 31")

    last_day = days_in_month(year, month)
    actual_end_day = last_day if end_day == END_OF_MONTH else min(end_day, last_day)
    end = date(year, month, actual_end_day)

    if start_day > actual_end_day:
        prev_year, prev_month = previous_month(year, month)
        start = _clamped(prev_year, prev_month, start_day)
    else:
        start = date(year, month, start_day)
    return BillingWindow(start, end, month_label(year, month))


def explicit_window(start: date, end: date) -> BillingWindow:
    if start > end:
        raise ValueError("Start date must be before end date")
    return BillingWindow(start, end, f"{start.isoformat()} to {end.isoformat()}")


def calendar_month_window(year: int, month: int) -> BillingWindow:
    first = date(year, month, 1)
    return BillingWindow(first, month_end(first), month_label(year, month))


def resolve_summary_window(
    month: Optional[str],
    start: Optional[date],
    end: Optional[date],
    *,
    start_day: int = 1,
    end_day: int = END_OF_MONTH,
    today: Optional[date] = None,
) -> BillingWindow:
    if start is not None or end is not None:
        if start is None or end is None:
            raise ValueError("Custom range requires both start and end dates")
        return explicit_window(start, end)

    if month:
        year, month_num = parse_month(month)
    else:
        today = today or local_today()
        year, month_num = today.year, today.month
    return resolve_billing_window(year, month_num, start_day, end_day)
