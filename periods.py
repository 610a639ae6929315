from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetPeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def bounds(self) -> tuple[datetime, datetime]:
        """Datetime range covering every instant of the inclusive day window."""
        return (
            datetime.combine(self.start, datetime.min.time()),
            datetime.combine(self.end + timedelta(days=1), datetime.min.time()),
        )


def local_now() -> datetime:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = d.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(d: date, count: int) -> date:
    total = d.year * 12 + (d.month - 1) + count
    year, month = divmod(total, 12)
    return date(year, month + 1, 1)


def shift_months(d: date, count: int) -> date:
    first = add_months(d, count)
    return first.replace(day=min(d.day, month_end(first).day))


def budget_window(period: BudgetPeriod, *, today: Optional[date] = None) -> Period:
    today = today or local_today()
    if period == BudgetPeriod.daily:
        return Period(period.value, today, today)
    if period == BudgetPeriod.weekly:
        start = today - timedelta(days=today.weekday())
        return Period(period.value, start, start + timedelta(days=6))
    if period == BudgetPeriod.yearly:
        return Period(period.value, date(today.year, 1, 1), date(today.year, 12, 31))
    return Period(period.value, month_start(today), month_end(today))


def resolve_report_period(slug: Optional[str], anchor: Optional[date] = None) -> Period:
    anchor = anchor or local_today()
    mapping = {
        "day": BudgetPeriod.daily,
        "week": BudgetPeriod.weekly,
        "month": BudgetPeriod.monthly,
        "year": BudgetPeriod.yearly,
    }
    slug = slug or "month"
    if slug not in mapping:
        raise ValueError("Period must be one of day, week, month, year")
    window = budget_window(mapping[slug], today=anchor)
    return Period(slug, window.start, window.end)


def naive_local(value: datetime) -> datetime:
    """Convert an aware timestamp to naive local time; naive values pass through."""
    if value.tzinfo is None:
        return value
    settings = get_settings()
    return value.astimezone(ZoneInfo(settings.timezone)).replace(tzinfo=None)
