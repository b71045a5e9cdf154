from datetime import date, datetime
from decimal import Decimal

import pytest

from quivercore.billing_calendar import (
    advance_annual_period, calculate_prorated_price, calendar_period,
    days_remaining_in_month, first_of_next_month, from_unix, month_year,
    next_anniversary, next_billing_date, previous_month_year, to_unix
)


def test_first_of_next_month_rolls_over_year():
    assert first_of_next_month(datetime(2025, 12, 31, 23, 59)) == datetime(2026, 1, 1)
    assert first_of_next_month(date(2025, 2, 10)) == datetime(2025, 3, 1)


def test_calendar_period_end_is_exclusive_start_of_next_month():
    start, end = calendar_period(datetime(2025, 8, 15, 12, 30))
    assert start == datetime(2025, 8, 1)
    assert end == datetime(2025, 9, 1)


def test_month_year_and_previous_month():
    assert month_year(datetime(2025, 8, 15)) == "2025-08"
    assert previous_month_year(datetime(2025, 9, 1)) == "2025-08"
    assert previous_month_year(datetime(2025, 1, 1)) == "2024-12"


def test_days_remaining_counts_the_current_day():
    assert days_remaining_in_month(date(2025, 8, 15)) == 17
    assert days_remaining_in_month(date(2025, 8, 31)) == 1
    assert days_remaining_in_month(date(2024, 2, 1)) == 29


@pytest.mark.parametrize(
    "on_date, expected",
    [
        (date(2025, 8, 15), Decimal("15.90")),
        (date(2025, 8, 1), Decimal("29.00")),
        (date(2025, 8, 31), Decimal("0.94")),
    ],
)
def test_prorated_price_for_explorer_monthly(on_date, expected):
    assert calculate_prorated_price(Decimal("29"), on_date) == expected


def test_next_billing_date_monthly_is_first_of_next_month():
    assert next_billing_date("monthly", datetime(2025, 8, 15)) == date(2025, 9, 1)


def test_next_billing_date_annual_clamps_leap_day():
    assert next_billing_date("annual", datetime(2024, 2, 29)) == date(2025, 2, 28)


def test_leap_day_anchor_does_not_drift():
    start = datetime(2024, 2, 29, 9, 30)
    first_start, first_end = advance_annual_period(start, 29)
    assert first_start == datetime(2025, 2, 28, 9, 30)
    assert first_end == datetime(2026, 2, 28, 9, 30)

    second_start, second_end = advance_annual_period(first_start, 29)
    assert second_start == datetime(2026, 2, 28, 9, 30)
    assert second_end == datetime(2027, 2, 28, 9, 30)

    # Back on the 29th once a leap year comes round
    assert next_anniversary(datetime(2027, 2, 28), 29) == date(2028, 2, 29)


def test_anniversary_on_the_31st():
    assert next_anniversary(datetime(2025, 1, 31), 31) == date(2026, 1, 31)


def test_unix_conversion_is_naive_utc():
    moment = datetime(2025, 9, 1, 0, 0)
    assert from_unix(to_unix(moment)) == moment
    assert from_unix(None) is None
    assert to_unix(date(1970, 1, 2)) == 86400
