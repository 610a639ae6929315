"""Read-only status view over a budget's allocations and spent counters."""

from dataclasses import asdict, dataclass
from typing import Optional

from models import Budget, BudgetCategory


@dataclass(frozen=True)
class CategoryStatus:
    category: str
    budgeted_cents: int
    spent_cents: int
    remaining_cents: int
    spent_percentage: float


@dataclass(frozen=True)
class BudgetStatus:
    total_budget_cents: int
    total_spent_cents: int
    remaining_budget_cents: int
    spent_percentage: float
    is_warning: bool
    is_critical: bool
    category_status: list[CategoryStatus]

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


def category_status(row: BudgetCategory) -> CategoryStatus:
    return CategoryStatus(
        category=row.category,
        budgeted_cents=row.amount_cents,
        spent_cents=row.spent_cents,
        remaining_cents=row.amount_cents - row.spent_cents,
        spent_percentage=row.spent_cents / row.amount_cents * 100,
    )


def budget_status(budget: Budget) -> BudgetStatus:
    # total_budget_cents > 0 is a creation invariant, so no zero guard here.
    total_spent = sum(row.spent_cents for row in budget.categories)
    spent_percentage = total_spent / budget.total_budget_cents * 100
    return BudgetStatus(
        total_budget_cents=budget.total_budget_cents,
        total_spent_cents=total_spent,
        remaining_budget_cents=budget.total_budget_cents - total_spent,
        spent_percentage=spent_percentage,
        is_warning=spent_percentage >= budget.warning_threshold,
        is_critical=spent_percentage >= budget.critical_threshold,
        category_status=[category_status(row) for row in budget.categories],
    )


def category_alert_message(budget: Budget, row: BudgetCategory) -> Optional[str]:
    """
    Human-readable alert for a category that has crossed the budget's
    warning or critical threshold, or None while spending is below both.
    """
    status = category_status(row)
    pct = status.spent_percentage
    if pct >= budget.critical_threshold:
        return (
            f"Spending on {row.category} has reached {round(pct)}% of its budget!"
        )
    if pct >= budget.warning_threshold:
        left = max(0, round(100 - pct))
        return f"Heads up: {row.category} budget has {left}% left"
    return None
