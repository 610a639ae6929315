from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from budget_status import budget_status, category_alert_message
from config import get_settings
from models import (
    ActivationCode,
    Budget,
    BudgetAlert,
    BudgetCategory,
    BudgetPeriod,
    PhoneBinding,
    Transaction,
    TransactionSource,
    TransactionType,
    User,
)
from periods import (
    Period,
    add_months,
    budget_window,
    local_now,
    local_today,
    month_end,
    month_start,
    naive_local,
    shift_months,
)
from schemas import (
    ActivationCodeIn,
    ActivationRequest,
    BudgetAlertIn,
    BudgetCategoryIn,
    BudgetIn,
    BudgetThresholdsIn,
    TransactionIn,
    UserIn,
)


logger = logging.getLogger(__name__)

FUZZY_MIN_LENGTH = 5

WEEKDAYS = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]


class NotFoundError(ValueError):
    pass


class BudgetValidationError(ValueError):
    pass


class BudgetConflictError(ValueError):
    pass


class ConcurrentModificationError(RuntimeError):
    pass


class ActivationError(ValueError):
    pass


class AmbiguousCategoryError(ValueError):
    pass


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: UserIn) -> User:
        username = data.username.strip()
        existing = self.session.scalar(
            select(User).where(func.lower(User.username) == username.lower())
        )
        if existing:
            raise ValueError("Username already taken")
        user = User(username=username, role=data.role)
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def get_by_username(self, username: str) -> User:
        user = self.session.scalar(select(User).where(User.username == username))
        if not user:
            raise NotFoundError("User not found")
        return user

    def list(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.id)).all())


@dataclass(frozen=True)
class BudgetImpact:
    budget_id: int
    budget_category_id: int
    category: str
    spent_cents: int
    amount_cents: int
    triggered_thresholds: list[int]
    alert: Optional[str]


class BudgetSpendingService:
    """
    Keeps BudgetCategory.spent_cents in step with expense transactions.

    Counters are changed with a single conditional UPDATE so concurrent
    writers cannot lose increments. Each counted transaction remembers the
    budget category it was attributed to; reversals target that attribution
    and are a no-op once it is gone.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def find_matching_category(
        self, category: str, when: datetime
    ) -> Optional[BudgetCategory]:
        day = when.date()
        stmt = (
            select(BudgetCategory)
            .join(Budget, BudgetCategory.budget_id == Budget.id)
            .where(
                Budget.user_id == self.user_id,
                Budget.is_active.is_(True),
                Budget.start_date <= day,
                Budget.end_date >= day,
                BudgetCategory.category == category,
            )
            .order_by(Budget.start_date.desc(), Budget.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def _adjust_spent(self, row: BudgetCategory, delta: int) -> None:
        self.session.execute(
            update(BudgetCategory)
            .where(BudgetCategory.id == row.id)
            .values(spent_cents=BudgetCategory.spent_cents + delta)
            .execution_options(synchronize_session=False)
        )
        self.session.expire(row, ["spent_cents"])
        logger.info(
            f"budget_counter: budget={row.budget_id} category={row.category} "
            f"delta={delta}"
        )

    def _trigger_alerts(self, row: BudgetCategory) -> list[int]:
        spent = (
            select(BudgetCategory.spent_cents)
            .where(BudgetCategory.id == row.id)
            .scalar_subquery()
        )
        allocated = (
            select(BudgetCategory.amount_cents)
            .where(BudgetCategory.id == row.id)
            .scalar_subquery()
        )
        pending = [
            alert.threshold
            for alert in row.alerts
            if not alert.is_triggered
            and alert.threshold * row.amount_cents <= row.spent_cents * 100
        ]
        # Alerts only move from untriggered to triggered on this path.
        self.session.execute(
            update(BudgetAlert)
            .where(
                BudgetAlert.budget_category_id == row.id,
                BudgetAlert.is_triggered.is_(False),
                BudgetAlert.threshold * allocated <= spent * 100,
            )
            .values(is_triggered=True, triggered_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        for alert in row.alerts:
            self.session.expire(alert)
        for threshold in pending:
            logger.info(
                f"budget_alert: budget={row.budget_id} category={row.category} "
                f"threshold={threshold}"
            )
        return pending

    def record_expense(self, txn: Transaction) -> Optional[BudgetImpact]:
        txn.budget_category_id = None
        if txn.type != TransactionType.expense:
            return None
        row = self.find_matching_category(txn.category, txn.date)
        if row is None:
            logger.info(
                f"budget_counter: uncounted transaction category={txn.category} "
                f"date={txn.date.date()}"
            )
            return None
        self._adjust_spent(row, txn.amount_cents)
        txn.budget_category_id = row.id
        triggered = self._trigger_alerts(row)
        return BudgetImpact(
            budget_id=row.budget_id,
            budget_category_id=row.id,
            category=row.category,
            spent_cents=row.spent_cents,
            amount_cents=row.amount_cents,
            triggered_thresholds=triggered,
            alert=category_alert_message(row.budget, row),
        )

    def release_expense(self, txn: Transaction) -> None:
        if txn.budget_category_id is None:
            return
        row = self.session.get(BudgetCategory, txn.budget_category_id)
        txn.budget_category_id = None
        if row is None:
            return
        self._adjust_spent(row, -txn.amount_cents)

    def detach_categories(self, category_ids: list[int]) -> None:
        if not category_ids:
            return
        self.session.execute(
            update(Transaction)
            .where(Transaction.budget_category_id.in_(category_ids))
            .values(budget_category_id=None)
        )


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    source: Optional[TransactionSource] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount_cents: Optional[int] = None
    max_amount_cents: Optional[int] = None


@dataclass
class TransactionOutcome:
    transaction: Transaction
    impact: Optional[BudgetImpact] = None

    @property
    def alerts(self) -> list[str]:
        if self.impact and self.impact.alert:
            return [self.impact.alert]
        return []


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.spending = BudgetSpendingService(session, user_id)

    def create(
        self, data: TransactionIn, source: TransactionSource = TransactionSource.web
    ) -> TransactionOutcome:
        txn = Transaction(
            user_id=self.user_id,
            type=data.type,
            amount_cents=data.amount_cents,
            category=data.category.strip(),
            description=data.description.strip(),
            date=naive_local(data.date) if data.date else local_now(),
            source=source,
        )
        self.session.add(txn)
        self.session.flush()
        impact = self.spending.record_expense(txn)
        self.session.commit()
        self.session.refresh(txn)
        return TransactionOutcome(transaction=txn, impact=impact)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> TransactionOutcome:
        txn = self.get(transaction_id)
        new_date = naive_local(data.date) if data.date else txn.date
        new_category = data.category.strip()
        reconcile = (txn.type, txn.amount_cents, txn.category, txn.date) != (
            data.type,
            data.amount_cents,
            new_category,
            new_date,
        )

        if reconcile:
            self.spending.release_expense(txn)

        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.category = new_category
        txn.description = data.description.strip()
        txn.date = new_date
        self.session.flush()

        impact = None
        if reconcile:
            impact = self.spending.record_expense(txn)
        self.session.commit()
        self.session.refresh(txn)
        return TransactionOutcome(transaction=txn, impact=impact)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.spending.release_expense(txn)
        self.session.delete(txn)
        self.session.commit()

    def list(
        self, filters: TransactionFilters, page: int = 1, limit: int = 10
    ) -> tuple[list[Transaction], int]:
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.source:
            stmt = stmt.where(Transaction.source == filters.source)
        if filters.min_amount_cents is not None:
            stmt = stmt.where(Transaction.amount_cents >= filters.min_amount_cents)
        if filters.max_amount_cents is not None:
            stmt = stmt.where(Transaction.amount_cents <= filters.max_amount_cents)
        if filters.start_date:
            start, _ = Period("filter", filters.start_date, filters.start_date).bounds()
            stmt = stmt.where(Transaction.date >= start)
        if filters.end_date:
            _, end = Period("filter", filters.end_date, filters.end_date).bounds()
            stmt = stmt.where(Transaction.date < end)

        total = int(
            self.session.execute(
                select(func.count()).select_from(stmt.subquery())
            ).scalar_one()
        )
        page = max(page, 1)
        items = self.session.scalars(
            stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return list(items), total

    def expenses_between(
        self, start: date, end: date, *, limit: Optional[int] = None
    ) -> list[Transaction]:
        lower, upper = Period("window", start, end).bounds()
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date >= lower,
                Transaction.date < upper,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def known_categories(self) -> list[str]:
        stmt = (
            select(Transaction.category)
            .where(Transaction.user_id == self.user_id)
            .distinct()
        )
        return [row for row in self.session.scalars(stmt).all()]


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.spending = BudgetSpendingService(session, user_id)

    def _validate(self, data: BudgetIn) -> None:
        if data.end_date < data.start_date:
            raise BudgetValidationError("End date must not be before start date")
        names = [c.category.strip() for c in data.categories]
        if len(set(names)) != len(names):
            raise BudgetValidationError("Budget categories must be unique")
        category_total = sum(c.amount_cents for c in data.categories)
        if category_total != data.total_budget_cents:
            logger.warning(
                f"budget_rejected: user={self.user_id} reason=sum_mismatch "
                f"categories={category_total} total={data.total_budget_cents}"
            )
            raise BudgetValidationError("Category totals must equal total budget")
        thresholds = self._thresholds(data)
        if thresholds.warning > thresholds.critical:
            raise BudgetValidationError(
                "Warning threshold must not exceed critical threshold"
            )

    @staticmethod
    def _thresholds(data: BudgetIn) -> BudgetThresholdsIn:
        if data.thresholds is not None:
            return data.thresholds
        settings = get_settings()
        return BudgetThresholdsIn(
            warning=settings.warning_threshold,
            critical=settings.critical_threshold,
        )

    def overlapping(
        self, start: date, end: date, *, exclude_id: Optional[int] = None
    ) -> list[Budget]:
        stmt = select(Budget).where(
            Budget.user_id == self.user_id,
            Budget.is_active.is_(True),
            Budget.start_date <= end,
            Budget.end_date >= start,
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        return list(self.session.scalars(stmt).all())

    def _ensure_no_overlap(
        self, data: BudgetIn, *, exclude_id: Optional[int] = None
    ) -> None:
        if not data.is_active:
            return
        clashes = self.overlapping(
            data.start_date, data.end_date, exclude_id=exclude_id
        )
        if clashes:
            logger.warning(
                f"budget_rejected: user={self.user_id} reason=overlap "
                f"with={[b.id for b in clashes]}"
            )
            raise BudgetConflictError("A budget already exists for this period")

    @staticmethod
    def _build_alerts(alerts: list[BudgetAlertIn]) -> list[BudgetAlert]:
        thresholds = sorted({a.threshold for a in alerts})
        return [BudgetAlert(threshold=t, is_triggered=False) for t in thresholds]

    def create(self, data: BudgetIn) -> Budget:
        self._validate(data)
        self._ensure_no_overlap(data)
        thresholds = self._thresholds(data)
        budget = Budget(
            user_id=self.user_id,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            total_budget_cents=data.total_budget_cents,
            is_active=data.is_active,
            warning_threshold=thresholds.warning,
            critical_threshold=thresholds.critical,
        )
        for position, item in enumerate(data.categories):
            budget.categories.append(
                BudgetCategory(
                    position=position,
                    category=item.category.strip(),
                    amount_cents=item.amount_cents,
                    spent_cents=0,
                    alerts=self._build_alerts(item.alerts),
                )
            )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(
            f"budget_created: id={budget.id} user={self.user_id} "
            f"window={budget.start_date}..{budget.end_date}"
        )
        return budget

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget)
            .options(
                selectinload(Budget.categories).selectinload(BudgetCategory.alerts)
            )
            .where(Budget.user_id == self.user_id, Budget.id == budget_id)
        )
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def _merge_alerts(self, row: BudgetCategory, alerts: list[BudgetAlertIn]) -> None:
        wanted = sorted({a.threshold for a in alerts})
        existing = {alert.threshold: alert for alert in row.alerts}
        row.alerts = [
            existing.get(t) or BudgetAlert(threshold=t, is_triggered=False)
            for t in wanted
        ]

    def _merge_categories(self, budget: Budget, items: list[BudgetCategoryIn]) -> None:
        existing = {row.category: row for row in budget.categories}
        keep_names = {item.category.strip() for item in items}
        removed = [row for name, row in existing.items() if name not in keep_names]
        self.spending.detach_categories([row.id for row in removed])

        merged: list[BudgetCategory] = []
        for position, item in enumerate(items):
            name = item.category.strip()
            row = existing.get(name)
            if row is None:
                row = BudgetCategory(category=name, spent_cents=0)
                row.alerts = self._build_alerts(item.alerts)
            else:
                self._merge_alerts(row, item.alerts)
            row.position = position
            row.amount_cents = item.amount_cents
            merged.append(row)
        budget.categories = merged

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        if data.version is not None and data.version != budget.version:
            raise ConcurrentModificationError(
                "Budget was modified by another request; reload and retry"
            )
        self._validate(data)
        self._ensure_no_overlap(data, exclude_id=budget.id)
        # Omitted thresholds keep the stored ones.
        thresholds = data.thresholds or BudgetThresholdsIn(
            warning=budget.warning_threshold, critical=budget.critical_threshold
        )

        try:
            # Statements issued while merging may autoflush the budget row.
            self._merge_categories(budget, data.categories)
            budget.period = data.period
            budget.start_date = data.start_date
            budget.end_date = data.end_date
            budget.total_budget_cents = data.total_budget_cents
            budget.is_active = data.is_active
            budget.warning_threshold = thresholds.warning
            budget.critical_threshold = thresholds.critical
            budget.updated_at = datetime.utcnow()
            self.session.flush()
        except StaleDataError as exc:
            self.session.rollback()
            raise ConcurrentModificationError(
                "Budget was modified by another request; reload and retry"
            ) from exc
        self.session.commit()
        self.session.refresh(budget)
        logger.info(f"budget_updated: id={budget.id} version={budget.version}")
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.spending.detach_categories([row.id for row in budget.categories])
        self.session.delete(budget)
        try:
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            raise ConcurrentModificationError(
                "Budget was modified by another request; reload and retry"
            ) from exc
        logger.info(f"budget_deleted: id={budget_id} user={self.user_id}")

    def list(
        self,
        *,
        active: Optional[bool] = None,
        period: Optional[BudgetPeriod] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        today: Optional[date] = None,
    ) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(
                selectinload(Budget.categories).selectinload(BudgetCategory.alerts)
            )
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        if active:
            stmt = stmt.where(
                Budget.is_active.is_(True),
                Budget.end_date >= (today or local_today()),
            )
        if period:
            stmt = stmt.where(Budget.period == period)
        if start_date:
            stmt = stmt.where(Budget.start_date >= start_date)
        if end_date:
            stmt = stmt.where(Budget.start_date <= end_date)
        return list(self.session.scalars(stmt).all())

    def current(
        self, *, today: Optional[date] = None, period: Optional[BudgetPeriod] = None
    ) -> Optional[Budget]:
        today = today or local_today()
        stmt = select(Budget).where(
            Budget.user_id == self.user_id,
            Budget.is_active.is_(True),
            Budget.start_date <= today,
            Budget.end_date >= today,
        )
        if period:
            stmt = stmt.where(Budget.period == period)
        return self.session.scalar(stmt.order_by(Budget.start_date.desc()).limit(1))

    def set_category_allocation(
        self,
        category: str,
        amount_cents: int,
        *,
        period: BudgetPeriod = BudgetPeriod.monthly,
        today: Optional[date] = None,
    ) -> Budget:
        """
        Set one category's allocation on the current budget of `period`,
        creating that budget when none covers today. The total follows the
        sum of the categories.
        """
        today = today or local_today()
        name = category.strip()
        budget = self.current(today=today, period=period)
        if budget is None:
            window = budget_window(period, today=today)
            return self.create(
                BudgetIn(
                    period=period,
                    total_budget_cents=amount_cents,
                    categories=[
                        BudgetCategoryIn(category=name, amount_cents=amount_cents)
                    ],
                    start_date=window.start,
                    end_date=window.end,
                )
            )

        items: list[BudgetCategoryIn] = []
        found = False
        for row in budget.categories:
            alerts = [BudgetAlertIn(threshold=a.threshold) for a in row.alerts]
            if row.category == name:
                found = True
                items.append(
                    BudgetCategoryIn(
                        category=name, amount_cents=amount_cents, alerts=alerts
                    )
                )
            else:
                items.append(
                    BudgetCategoryIn(
                        category=row.category,
                        amount_cents=row.amount_cents,
                        alerts=alerts,
                    )
                )
        if not found:
            items.append(BudgetCategoryIn(category=name, amount_cents=amount_cents))
        return self.update(
            budget.id,
            BudgetIn(
                period=budget.period,
                total_budget_cents=sum(item.amount_cents for item in items),
                categories=items,
                start_date=budget.start_date,
                end_date=budget.end_date,
                is_active=budget.is_active,
                thresholds=BudgetThresholdsIn(
                    warning=budget.warning_threshold,
                    critical=budget.critical_threshold,
                ),
                version=budget.version,
            ),
        )

    def overview(self, months: int = 6, *, today: Optional[date] = None) -> dict:
        today = today or local_today()
        since = shift_months(today, -months)
        budgets = self.session.scalars(
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(
                Budget.user_id == self.user_id,
                Budget.start_date >= since,
                Budget.end_date <= today,
            )
            .order_by(Budget.start_date.asc(), Budget.id.asc())
        ).all()

        analysis: dict[str, object] = {
            "periods": [],
            "categories": {},
            "trends": {"total_budgeted": [], "total_spent": [], "savings": []},
        }
        categories: dict[str, dict[str, int]] = analysis["categories"]
        trends: dict[str, list] = analysis["trends"]
        for budget in budgets:
            status = budget_status(budget)
            analysis["periods"].append(
                {
                    "budget_id": budget.id,
                    "period": budget.period.value,
                    "start_date": budget.start_date,
                    "end_date": budget.end_date,
                    "budgeted_cents": budget.total_budget_cents,
                    "spent_cents": status.total_spent_cents,
                    "remaining_cents": status.remaining_budget_cents,
                    "categories": status.as_dict()["category_status"],
                }
            )
            for cat in status.category_status:
                bucket = categories.setdefault(
                    cat.category,
                    {"total_budgeted": 0, "total_spent": 0, "occurrences": 0},
                )
                bucket["total_budgeted"] += cat.budgeted_cents
                bucket["total_spent"] += cat.spent_cents
                bucket["occurrences"] += 1
            trends["total_budgeted"].append(
                {"date": budget.start_date, "amount_cents": budget.total_budget_cents}
            )
            trends["total_spent"].append(
                {"date": budget.start_date, "amount_cents": status.total_spent_cents}
            )
            trends["savings"].append(
                {
                    "date": budget.start_date,
                    "amount_cents": status.remaining_budget_cents,
                }
            )
        return analysis


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _rows_between(self, start: date, end: date) -> list[Transaction]:
        lower, upper = Period("report", start, end).bounds()
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date >= lower,
                Transaction.date < upper,
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def summary(self, period: Period) -> dict[str, object]:
        lower, upper = period.bounds()
        in_period = (
            Transaction.user_id == self.user_id,
            Transaction.date >= lower,
            Transaction.date < upper,
        )
        totals = {TransactionType.income.value: 0, TransactionType.expense.value: 0}
        counts = {TransactionType.income.value: 0, TransactionType.expense.value: 0}
        for row in self.session.execute(
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(*in_period)
            .group_by(Transaction.type)
        ):
            totals[row.type.value] = int(row.total or 0)
            counts[row.type.value] = int(row.count or 0)

        categories: dict[str, list[dict[str, object]]] = {
            TransactionType.income.value: [],
            TransactionType.expense.value: [],
        }
        for row in self.session.execute(
            select(
                Transaction.type,
                Transaction.category,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(*in_period)
            .group_by(Transaction.type, Transaction.category)
        ):
            type_total = totals[row.type.value]
            amount = int(row.total or 0)
            categories[row.type.value].append(
                {
                    "category": row.category,
                    "amount_cents": amount,
                    "count": int(row.count or 0),
                    "percentage": (amount / type_total * 100) if type_total else 0.0,
                }
            )
        for items in categories.values():
            items.sort(key=lambda item: item["amount_cents"], reverse=True)

        budget = self.session.scalar(
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.is_active.is_(True),
                Budget.start_date <= period.end,
                Budget.end_date >= period.start,
            )
            .order_by(Budget.start_date.desc())
            .limit(1)
        )
        return {
            "period": {"slug": period.slug, "start": period.start, "end": period.end},
            "totals": totals,
            "counts": counts,
            "categories": categories,
            "balance": totals["income"] - totals["expense"],
            "budget": budget_status(budget).as_dict() if budget else None,
        }

    def dashboard(self, *, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        month = self.summary(Period("month", month_start(today), month_end(today)))
        budget = BudgetService(self.session, self.user_id).current(today=today)
        recent = self.session.scalars(
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(5)
        ).all()
        return {
            "monthly_totals": month["totals"],
            "balance": month["balance"],
            "budget": budget_status(budget).as_dict() if budget else None,
            "recent_transactions": list(recent),
        }

    def trends(self, months: int = 12, *, today: Optional[date] = None) -> dict:
        today = today or local_today()
        first = add_months(month_start(today), -(months - 1))
        last = month_end(today)

        keys = [add_months(first, offset) for offset in range(months)]
        index = {(k.year, k.month): i for i, k in enumerate(keys)}
        monthly = [
            {"month": k.strftime("%Y-%m"), "income": 0, "expense": 0, "balance": 0}
            for k in keys
        ]
        by_category: dict[str, list[int]] = {}
        for txn in self._rows_between(first, last):
            slot = index.get((txn.date.year, txn.date.month))
            if slot is None:
                continue
            monthly[slot][txn.type.value] += txn.amount_cents
            series = by_category.setdefault(txn.category, [0] * months)
            series[slot] += txn.amount_cents
        for row in monthly:
            row["balance"] = row["income"] - row["expense"]
        return {"monthly": monthly, "categories": by_category}

    def analysis(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> dict[str, object]:
        end = end or local_today()
        start = start or (end - timedelta(days=365))
        if start > end:
            raise ValueError("Start date must be before end date")
        rows = self._rows_between(start, end)

        by_day = [0] * 7
        by_hour = [0] * 24
        by_category: dict[str, dict[str, float]] = {}
        groups: dict[tuple[str, str], list[int]] = {}
        income = 0
        expenses = 0
        largest = 0
        for txn in rows:
            groups.setdefault((txn.category, txn.description), []).append(
                txn.amount_cents
            )
            if txn.type == TransactionType.income:
                income += txn.amount_cents
                continue
            expenses += txn.amount_cents
            largest = max(largest, txn.amount_cents)
            by_day[txn.date.weekday()] += txn.amount_cents
            by_hour[txn.date.hour] += txn.amount_cents
            stats = by_category.setdefault(
                txn.category, {"total": 0, "count": 0, "average": 0.0}
            )
            stats["total"] += txn.amount_cents
            stats["count"] += 1
            stats["average"] = stats["total"] / stats["count"]

        frequent = [
            {
                "category": category,
                "description": description,
                "count": len(amounts),
                "total_cents": sum(amounts),
                "average_cents": sum(amounts) / len(amounts),
            }
            for (category, description), amounts in groups.items()
            if len(amounts) > 2
        ]
        frequent.sort(key=lambda item: item["count"], reverse=True)

        most_frequent = ""
        if by_category:
            most_frequent = max(by_category.items(), key=lambda kv: kv[1]["count"])[0]
        days = max((end - start).days, 1)
        return {
            "period": {"start": start, "end": end},
            "habits": {
                "by_day_of_week": dict(zip(WEEKDAYS, by_day)),
                "by_hour": by_hour,
                "by_category": by_category,
                "frequent_transactions": frequent[:10],
            },
            "metrics": {
                "savings_rate": ((income - expenses) / income * 100) if income else 0.0,
                "average_daily_expense": expenses / days,
                "largest_expense": largest,
                "most_frequent_category": most_frequent,
                "busiest_day": (
                    WEEKDAYS[by_day.index(max(by_day))] if expenses else None
                ),
                "busiest_hour": by_hour.index(max(by_hour)) if expenses else None,
            },
        }


class CategoryResolver:
    """Maps free-text chat categories onto the owner's known categories."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def candidates(self) -> list[str]:
        budget_names = self.session.scalars(
            select(BudgetCategory.category)
            .join(Budget, BudgetCategory.budget_id == Budget.id)
            .where(Budget.user_id == self.user_id, Budget.is_active.is_(True))
            .distinct()
        ).all()
        names = set(budget_names)
        names.update(TransactionService(self.session, self.user_id).known_categories())
        return sorted(names)

    def resolve(self, raw: str) -> str:
        clean = raw.strip()
        input_lower = clean.lower()
        known = self.candidates()
        for name in known:
            if name.lower() == input_lower:
                return name
        # One edit turns short labels into other words ("bar" -> "car").
        if len(input_lower) < FUZZY_MIN_LENGTH:
            return clean

        best_distance: Optional[int] = None
        best: list[str] = []
        for name in known:
            dist = int(Levenshtein.distance(input_lower, name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [name]
            elif dist == best_distance:
                best.append(name)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted(best))
                raise AmbiguousCategoryError(
                    f"Category '{clean}' is ambiguous; matches: {options}"
                )
            return best[0]
        return clean


@dataclass
class ActivationCheck:
    expires_at: datetime
    max_phone_numbers: int
    used_phone_numbers: list[str] = field(default_factory=list)


class ActivationService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _used(code: ActivationCode) -> list[str]:
        try:
            return list(json.loads(code.used_phone_numbers_json or "[]"))
        except json.JSONDecodeError:
            return []

    def issue(self, data: ActivationCodeIn) -> ActivationCode:
        UserService(self.session).get(data.user_id)
        days = data.duration_days or get_settings().activation_days
        value = secrets.token_hex(4).upper()
        while self.session.scalar(
            select(ActivationCode).where(ActivationCode.code == value)
        ):
            value = secrets.token_hex(4).upper()
        code = ActivationCode(
            code=value,
            user_id=data.user_id,
            expires_at=datetime.utcnow() + timedelta(days=days),
            max_phone_numbers=data.max_phone_numbers,
            used_phone_numbers_json="[]",
            is_active=True,
        )
        self.session.add(code)
        self.session.commit()
        self.session.refresh(code)
        return code

    def _load(self, data: ActivationRequest) -> tuple[User, ActivationCode]:
        user = UserService(self.session).get_by_username(data.username)
        code = self.session.scalar(
            select(ActivationCode).where(
                ActivationCode.code == data.activation_code,
                ActivationCode.user_id == user.id,
                ActivationCode.is_active.is_(True),
            )
        )
        if not code:
            raise ActivationError("Invalid activation code")
        if code.expires_at <= datetime.utcnow():
            raise ActivationError("Activation code has expired")
        return user, code

    def _binding(self, phone_number: str) -> Optional[PhoneBinding]:
        return self.session.scalar(
            select(PhoneBinding).where(PhoneBinding.phone_number == phone_number)
        )

    @staticmethod
    def _is_live(binding: Optional[PhoneBinding], now: datetime) -> bool:
        return bool(
            binding
            and binding.is_active
            and binding.expires_at is not None
            and binding.expires_at > now
        )

    def _ensure_unbound(self, phone_number: str) -> Optional[PhoneBinding]:
        binding = self._binding(phone_number)
        if self._is_live(binding, datetime.utcnow()):
            logger.warning(f"chat_activation_rejected: phone={phone_number} bound")
            raise ActivationError("Phone number is already activated")
        return binding

    def verify(self, data: ActivationRequest) -> ActivationCheck:
        _, code = self._load(data)
        self._ensure_unbound(data.phone_number)
        used = self._used(code)
        if data.phone_number not in used and len(used) >= code.max_phone_numbers:
            raise ActivationError(
                "Maximum number of phone numbers reached for this activation code"
            )
        return ActivationCheck(
            expires_at=code.expires_at,
            max_phone_numbers=code.max_phone_numbers,
            used_phone_numbers=used,
        )

    def activate(self, data: ActivationRequest) -> PhoneBinding:
        user, code = self._load(data)
        binding = self._ensure_unbound(data.phone_number)
        used = self._used(code)
        if data.phone_number not in used:
            if len(used) >= code.max_phone_numbers:
                raise ActivationError(
                    "Maximum number of phone numbers reached for this activation code"
                )
            used.append(data.phone_number)
            code.used_phone_numbers_json = json.dumps(used)

        if binding is None:
            binding = PhoneBinding(phone_number=data.phone_number, user_id=user.id)
            self.session.add(binding)
        binding.user_id = user.id
        binding.is_active = True
        binding.activated_at = datetime.utcnow()
        binding.expires_at = code.expires_at
        self.session.commit()
        self.session.refresh(binding)
        logger.info(f"chat_activation: user={user.id} phone={data.phone_number}")
        return binding

    def status(self, user_id: int, phone_number: str) -> dict[str, object]:
        binding = self._binding(phone_number)
        if not binding or binding.user_id != user_id:
            raise NotFoundError("Phone number not found")
        days_remaining = None
        if binding.expires_at:
            days_remaining = (binding.expires_at - datetime.utcnow()).days
        return {
            "phone_number": binding.phone_number,
            "is_active": binding.is_active,
            "activated_at": binding.activated_at,
            "expires_at": binding.expires_at,
            "days_remaining": days_remaining,
        }

    def deactivate(self, user_id: int, phone_number: str) -> None:
        binding = self._binding(phone_number)
        if not binding or binding.user_id != user_id:
            raise NotFoundError("Phone number not found")
        binding.is_active = False
        self.session.commit()

    def extend(self, user_id: int, phone_number: str, days: int) -> PhoneBinding:
        """Push a binding's expiry out by `days`, counting from now if unset."""
        binding = self._binding(phone_number)
        if not binding or binding.user_id != user_id:
            raise NotFoundError("Phone number not found")
        base = binding.expires_at or datetime.utcnow()
        binding.expires_at = base + timedelta(days=days)
        self.session.commit()
        self.session.refresh(binding)
        logger.info(
            f"chat_activation_extended: user={user_id} phone={phone_number} "
            f"expires_at={binding.expires_at}"
        )
        return binding

    def phones(self, user_id: int) -> list[dict[str, object]]:
        now = datetime.utcnow()
        bindings = self.session.scalars(
            select(PhoneBinding)
            .where(PhoneBinding.user_id == user_id)
            .order_by(PhoneBinding.id)
        ).all()
        return [
            {
                "phone_number": b.phone_number,
                "is_active": b.is_active,
                "activated_at": b.activated_at,
                "expires_at": b.expires_at,
                "is_expired": b.expires_at is not None and b.expires_at <= now,
            }
            for b in bindings
        ]

    def remove_phone(self, user_id: int, phone_number: str) -> None:
        binding = self._binding(phone_number)
        if not binding or binding.user_id != user_id:
            raise NotFoundError("Phone number not found")
        self.session.delete(binding)
        self.session.commit()
        logger.info(f"chat_phone_removed: user={user_id} phone={phone_number}")

    def list_codes(
        self, *, active: bool = False, user_id: Optional[int] = None
    ) -> list[ActivationCode]:
        stmt = select(ActivationCode).order_by(
            ActivationCode.created_at.desc(), ActivationCode.id.desc()
        )
        if active:
            stmt = stmt.where(
                ActivationCode.is_active.is_(True),
                ActivationCode.expires_at > datetime.utcnow(),
            )
        if user_id is not None:
            stmt = stmt.where(ActivationCode.user_id == user_id)
        return list(self.session.scalars(stmt).all())

    def resolve_user(
        self, phone_number: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        binding = self._binding(phone_number)
        if not self._is_live(binding, now or datetime.utcnow()):
            return None
        user = self.session.get(User, binding.user_id)
        if not user or not user.is_active:
            return None
        return user


class AdminService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _count(self, model, *criteria) -> int:
        stmt = select(func.count()).select_from(model)
        if criteria:
            stmt = stmt.where(*criteria)
        return int(self.session.scalar(stmt) or 0)

    def stats(self, *, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        now = datetime.utcnow()
        # created_at is stored in UTC.
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        recent = self.session.scalars(
            select(Transaction)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(10)
        ).all()
        return {
            "users": {
                "total": self._count(User),
                "active": self._count(User, User.is_active.is_(True)),
            },
            "transactions": {
                "total": self._count(Transaction),
                "today": self._count(Transaction, Transaction.created_at >= day_start),
            },
            "budgets": {
                "total": self._count(Budget),
                "active": self._count(
                    Budget, Budget.is_active.is_(True), Budget.end_date >= today
                ),
            },
            "activation_codes": {
                "active": self._count(
                    ActivationCode,
                    ActivationCode.is_active.is_(True),
                    ActivationCode.expires_at > now,
                ),
            },
            "recent_activity": list(recent),
        }
