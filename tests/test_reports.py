from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import BudgetPeriod, TransactionType
from periods import Period, resolve_report_period
from schemas import BudgetCategoryIn, BudgetIn, TransactionIn, UserIn
from services import (
    AdminService,
    BudgetService,
    ReportService,
    TransactionService,
    UserService,
)


def _txn(kind: TransactionType, amount: int, category: str, when: datetime, desc="x"):
    return TransactionIn(
        type=kind,
        amount_cents=amount,
        category=category,
        description=desc,
        date=when,
    )


def test_summary_totals_breakdown_and_budget_status() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create(UserIn(username="alice"))
        BudgetService(session, user.id).create(
            BudgetIn(
                period=BudgetPeriod.monthly,
                total_budget_cents=400_000,
                categories=[BudgetCategoryIn(category="food", amount_cents=400_000)],
                start_date=date(2024, 1, 1),
                end_date=date(2024, 1, 31),
            )
        )
        txns = TransactionService(session, user.id)
        txns.create(
            _txn(TransactionType.income, 1_000_000, "salary", datetime(2024, 1, 1, 9))
        )
        txns.create(
            _txn(TransactionType.expense, 200_000, "food", datetime(2024, 1, 5, 12))
        )
        txns.create(
            _txn(TransactionType.expense, 100_000, "transport", datetime(2024, 1, 6, 8))
        )
        txns.create(
            _txn(TransactionType.expense, 999, "food", datetime(2024, 2, 1, 8))
        )

        summary = ReportService(session, user.id).summary(
            resolve_report_period("month", date(2024, 1, 20))
        )

        assert summary["totals"] == {"income": 1_000_000, "expense": 300_000}
        assert summary["counts"] == {"income": 1, "expense": 2}
        assert summary["balance"] == 700_000
        expense_rows = summary["categories"]["expense"]
        assert [row["category"] for row in expense_rows] == ["food", "transport"]
        assert expense_rows[0]["percentage"] == pytest.approx(200_000 / 300_000 * 100)
        assert summary["budget"]["total_spent_cents"] == 200_000
        assert summary["budget"]["spent_percentage"] == pytest.approx(50.0)


def test_summary_without_budget_reports_null() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create(UserIn(username="alice"))

        summary = ReportService(session, user.id).summary(
            Period("day", date(2024, 1, 1), date(2024, 1, 1))
        )

        assert summary["budget"] is None
        assert summary["totals"] == {"income": 0, "expense": 0}


def test_trends_are_zero_filled() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create(UserIn(username="alice"))
        txns = TransactionService(session, user.id)
        txns.create(
            _txn(TransactionType.income, 50_000, "salary", datetime(2024, 1, 3, 9))
        )
        txns.create(
            _txn(TransactionType.expense, 20_000, "food", datetime(2024, 3, 2, 9))
        )

        trends = ReportService(session, user.id).trends(3, today=date(2024, 3, 15))

        assert [row["month"] for row in trends["monthly"]] == [
            "2024-01",
            "2024-02",
            "2024-03",
        ]
        assert trends["monthly"][0]["balance"] == 50_000
        assert trends["monthly"][1] == {
            "month": "2024-02",
            "income": 0,
            "expense": 0,
            "balance": 0,
        }
        assert trends["monthly"][2]["expense"] == 20_000
        assert trends["categories"]["food"] == [0, 0, 20_000]


def test_analysis_habits_and_metrics() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create(UserIn(username="alice"))
        txns = TransactionService(session, user.id)
        txns.create(
            _txn(TransactionType.income, 100_000, "salary", datetime(2024, 1, 1, 9))
        )
        # 2024-01-15 is a Monday.
        for day in (15, 22, 29):
            txns.create(
                _txn(
                    TransactionType.expense,
                    10_000,
                    "food",
                    datetime(2024, 1, day, 12, 30),
                    desc="lunch",
                )
            )
        txns.create(
            _txn(TransactionType.expense, 30_000, "rent", datetime(2024, 1, 17, 8))
        )

        analysis = ReportService(session, user.id).analysis(
            date(2024, 1, 1), date(2024, 1, 31)
        )

        habits = analysis["habits"]
        assert list(habits["by_day_of_week"])[0] == "Monday"
        assert habits["by_day_of_week"]["Monday"] == 30_000
        assert habits["by_day_of_week"]["Wednesday"] == 30_000
        assert habits["by_hour"][12] == 30_000
        assert habits["by_category"]["food"]["count"] == 3
        assert habits["frequent_transactions"][0]["description"] == "lunch"
        assert habits["frequent_transactions"][0]["count"] == 3

        metrics = analysis["metrics"]
        assert metrics["savings_rate"] == pytest.approx(40.0)
        assert metrics["largest_expense"] == 30_000
        assert metrics["most_frequent_category"] == "food"
        assert metrics["busiest_day"] == "Monday"
        assert metrics["busiest_hour"] == 8


def test_analysis_rejects_inverted_range() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create(UserIn(username="alice"))
        with pytest.raises(ValueError):
            ReportService(session, user.id).analysis(
                date(2024, 2, 1), date(2024, 1, 1)
            )


def test_budget_overview_rolls_up_past_periods() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create(UserIn(username="alice"))
        budgets = BudgetService(session, user.id)
        for month in (1, 2):
            budgets.create(
                BudgetIn(
                    period=BudgetPeriod.monthly,
                    total_budget_cents=100_000,
                    categories=[
                        BudgetCategoryIn(category="food", amount_cents=100_000)
                    ],
                    start_date=date(2024, month, 1),
                    end_date=date(2024, month, 28),
                )
            )
        TransactionService(session, user.id).create(
            _txn(TransactionType.expense, 25_000, "food", datetime(2024, 2, 10, 9))
        )

        overview = budgets.overview(6, today=date(2024, 3, 10))

        assert len(overview["periods"]) == 2
        assert overview["categories"]["food"] == {
            "total_budgeted": 200_000,
            "total_spent": 25_000,
            "occurrences": 2,
        }
        assert [p["amount_cents"] for p in overview["trends"]["savings"]] == [
            100_000,
            75_000,
        ]


def test_dashboard_reports_current_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    today = date(2024, 3, 20)

    with Session(engine) as session:
        user = UserService(session).create(UserIn(username="alice"))
        BudgetService(session, user.id).create(
            BudgetIn(
                period=BudgetPeriod.monthly,
                total_budget_cents=100_000,
                categories=[BudgetCategoryIn(category="food", amount_cents=100_000)],
                start_date=date(2024, 3, 1),
                end_date=date(2024, 3, 31),
            )
        )
        txns = TransactionService(session, user.id)
        txns.create(
            _txn(TransactionType.income, 500_000, "salary", datetime(2024, 3, 1))
        )
        txns.create(_txn(TransactionType.expense, 20_000, "food", datetime(2024, 3, 5)))
        txns.create(_txn(TransactionType.expense, 9_000, "food", datetime(2024, 2, 27)))

        data = ReportService(session, user.id).dashboard(today=today)

        assert data["monthly_totals"] == {"income": 500_000, "expense": 20_000}
        assert data["balance"] == 480_000
        assert data["budget"]["total_spent_cents"] == 20_000
        assert [t.amount_cents for t in data["recent_transactions"]] == [
            20_000,
            500_000,
            9_000,
        ]


def test_admin_stats_count_across_users() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        users = UserService(session)
        alice = users.create(UserIn(username="alice"))
        bobby = users.create(UserIn(username="bobby"))
        TransactionService(session, alice.id).create(
            _txn(TransactionType.expense, 1_000, "food", datetime(2024, 1, 2))
        )
        TransactionService(session, bobby.id).create(
            _txn(TransactionType.income, 2_000, "salary", datetime(2024, 1, 3))
        )

        stats = AdminService(session).stats()

        assert stats["users"] == {"total": 2, "active": 2}
        assert stats["transactions"] == {"total": 2, "today": 2}
        assert stats["budgets"] == {"total": 0, "active": 0}
        assert stats["activation_codes"] == {"active": 0}
        assert len(stats["recent_activity"]) == 2
