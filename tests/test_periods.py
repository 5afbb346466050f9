from datetime import date

import pytest

from periods import (
    add_months,
    calendar_month_window,
    days_in_month,
    parse_month,
    resolve_billing_window,
    resolve_summary_window,
)


def test_cross_month_cycle_starts_in_previous_month() -> None:
    window = resolve_billing_window(2026, 1, start_day=27, end_day=26)
    assert window.start == date(2025, 12, 27)
    assert window.end == date(2026, 1, 26)
    assert window.label == "2026-01"


def test_end_of_month_sentinel_uses_last_day_of_february() -> None:
    window = resolve_billing_window(2025, 2, start_day=1, end_day=0)
    assert window.start == date(2025, 2, 1)
    assert window.end == date(2025, 2, 28)


def test_end_of_month_sentinel_in_leap_year() -> None:
    window = resolve_billing_window(2024, 2, start_day=1, end_day=0)
    assert window.end == date(2024, 2, 29)


def test_end_day_clamps_to_short_month() -> None:
    window = resolve_billing_window(2025, 4, start_day=1, end_day=31)
    assert window.start == date(2025, 4, 1)
    assert window.end == date(2025, 4, 30)


def test_start_day_clamps_in_previous_short_month() -> None:
    # Cycle 31st..15th ending in March starts on the last day of February.
    window = resolve_billing_window(2025, 3, start_day=31, end_day=15)
    assert window.start == date(2025, 2, 28)
    assert window.end == date(2025, 3, 15)


def test_start_after_clamped_end_crosses_month() -> None:
    # end_day 31 clamps to 28 in Feb 2025, so start_day 30 falls in January.
    window = resolve_billing_window(2025, 2, start_day=30, end_day=31)
    assert window.start == date(2025, 1, 30)
    assert window.end == date(2025, 2, 28)


def test_same_month_cycle_stays_inside_target_month() -> None:
    window = resolve_billing_window(2025, 6, start_day=5, end_day=20)
    assert window.start == date(2025, 6, 5)
    assert window.end == date(2025, 6, 20)


@pytest.mark.parametrize("start_day,end_day", [(0, 10), (32, 10), (1, 32), (1, -1)])
def test_out_of_range_days_are_rejected(start_day: int, end_day: int) -> None:
    with pytest.raises(ValueError):
        resolve_billing_window(2025, 1, start_day=start_day, end_day=end_day)


def test_explicit_range_takes_precedence_over_month() -> None:
    window = resolve_summary_window(
        "2025-01",
        date(2025, 3, 3),
        date(2025, 3, 9),
        start_day=27,
        end_day=26,
    )
    assert (window.start, window.end) == (date(2025, 3, 3), date(2025, 3, 9))
    assert window.label == "2025-03-03 to 2025-03-09"


def test_half_open_explicit_range_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_summary_window(None, date(2025, 3, 3), None)


def test_reversed_explicit_range_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_summary_window(None, date(2025, 3, 9), date(2025, 3, 3))


def test_month_defaults_to_today() -> None:
    window = resolve_summary_window(None, None, None, today=date(2025, 7, 14))
    assert (window.start, window.end) == (date(2025, 7, 1), date(2025, 7, 31))


def test_parse_month() -> None:
    assert parse_month("2025-12") == (2025, 12)
    for bad in ("2025-13", "2025-1", "25-01", "abcd-ef", ""):
        with pytest.raises(ValueError):
            parse_month(bad)


def test_month_arithmetic_rolls_over_years() -> None:
    assert add_months(date(2025, 1, 20), -1) == date(2024, 12, 1)
    assert add_months(date(2025, 11, 3), 2) == date(2026, 1, 1)
    assert days_in_month(2025, 12) == 31
    assert calendar_month_window(2024, 12).end == date(2024, 12, 31)
