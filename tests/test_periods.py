from datetime import date, datetime

import pytest

from models import BudgetPeriod
from periods import (
    Period,
    add_months,
    budget_window,
    month_end,
    resolve_report_period,
    shift_months,
)


def test_budget_windows_per_period() -> None:
    today = date(2024, 2, 14)  # Wednesday

    assert budget_window(BudgetPeriod.daily, today=today) == Period(
        "daily", today, today
    )
    weekly = budget_window(BudgetPeriod.weekly, today=today)
    assert (weekly.start, weekly.end) == (date(2024, 2, 12), date(2024, 2, 18))
    monthly = budget_window(BudgetPeriod.monthly, today=today)
    assert (monthly.start, monthly.end) == (date(2024, 2, 1), date(2024, 2, 29))
    yearly = budget_window(BudgetPeriod.yearly, today=today)
    assert (yearly.start, yearly.end) == (date(2024, 1, 1), date(2024, 12, 31))


def test_bounds_cover_the_whole_last_day() -> None:
    start, end = Period("x", date(2024, 1, 1), date(2024, 1, 31)).bounds()

    assert start == datetime(2024, 1, 1)
    assert end == datetime(2024, 2, 1)


def test_month_arithmetic() -> None:
    assert month_end(date(2023, 12, 5)) == date(2023, 12, 31)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 1)
    assert add_months(date(2024, 1, 15), -2) == date(2023, 11, 1)
    assert shift_months(date(2024, 3, 31), -1) == date(2024, 2, 29)


def test_report_period_rejects_unknown_slug() -> None:
    assert resolve_report_period(None, date(2024, 5, 5)).slug == "month"
    with pytest.raises(ValueError):
        resolve_report_period("fortnight", date(2024, 5, 5))
