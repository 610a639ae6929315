import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol

from sqlalchemy.orm import Session

from budget_status import budget_status
from models import BudgetPeriod, TransactionSource, TransactionType, User
from periods import local_today, resolve_report_period
from schemas import TransactionIn
from services import (
    ActivationService,
    AmbiguousCategoryError,
    BudgetService,
    CategoryResolver,
    ReportService,
    TransactionService,
)


logger = logging.getLogger(__name__)

APOLOGY = "Sorry, something went wrong while processing your message."

ACTIVATION_INSTRUCTIONS = (
    "Your number is not registered or is no longer active.\n\n"
    "To use this service:\n"
    "1. Get an activation code from an admin\n"
    "2. Activate this number with your username and the code"
)

HELP_TEXT = (
    "*How to use the bot*\n\n"
    "*Record transactions:*\n"
    '- Income: "record income 1000000 for salary"\n'
    '- Expense: "record expense 50000 for lunch"\n\n'
    "*Budgets:*\n"
    '- Set: "set budget 2000000 for food this month"\n'
    '- View: "show budget"\n\n'
    "*Reports:*\n"
    '- Summary: "financial report"'
)

PERIOD_TO_REPORT = {
    BudgetPeriod.daily: "day",
    BudgetPeriod.weekly: "week",
    BudgetPeriod.monthly: "month",
    BudgetPeriod.yearly: "year",
}


class Intent(str, Enum):
    transaction_income = "transaction.income"
    transaction_expense = "transaction.expense"
    budget_set = "budget.set"
    budget_view = "budget.view"
    report_summary = "report.summary"
    help = "help"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Intent":
        try:
            return cls(value)
        except ValueError:
            return cls.help


@dataclass
class ChatMessage:
    sender: str
    body: str
    intent: Intent = Intent.help
    entities: dict[str, str] = field(default_factory=dict)

    def amount_cents(self) -> Optional[int]:
        raw = self.entities.get("amount")
        if raw is None:
            return None
        digits = re.sub(r"[^0-9]", "", raw)
        if not digits or int(digits) == 0:
            return None
        # Chat amounts are whole currency units.
        return int(digits) * 100

    def category(self) -> Optional[str]:
        value = self.entities.get("category", "").strip()
        return value or None

    def period(self) -> BudgetPeriod:
        try:
            return BudgetPeriod(self.entities.get("period", "monthly"))
        except ValueError:
            return BudgetPeriod.monthly

    def description(self) -> str:
        match = re.search(r"for\s+(.+)$", self.body, re.IGNORECASE)
        return match.group(1).strip() if match else "No description"


def format_money(cents: int) -> str:
    return f"{cents / 100:,.0f}"


class ChatHandler:
    """Turns one inbound chat message into a text reply for its sender."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def handle(self, message: ChatMessage) -> str:
        try:
            user = ActivationService(self.session).resolve_user(message.sender)
            if user is None:
                return ACTIVATION_INSTRUCTIONS
            return self._dispatch(message, user)
        except AmbiguousCategoryError as exc:
            self.session.rollback()
            return str(exc)
        except Exception:
            logger.exception(
                f"chat_failed: sender={message.sender} intent={message.intent.value}"
            )
            self.session.rollback()
            return APOLOGY

    def _dispatch(self, message: ChatMessage, user: User) -> str:
        intent = message.intent
        if intent == Intent.transaction_income:
            return self._record(message, user, TransactionType.income)
        elif intent == Intent.transaction_expense:
            return self._record(message, user, TransactionType.expense)
        elif intent == Intent.budget_set:
            return self._set_budget(message, user)
        elif intent == Intent.budget_view:
            return self._view_budget(message, user)
        elif intent == Intent.report_summary:
            return self._summary(message, user)
        elif intent == Intent.help:
            return HELP_TEXT
        raise AssertionError(f"Unhandled intent: {intent}")

    def _record(self, message: ChatMessage, user: User, kind: TransactionType) -> str:
        amount = message.amount_cents()
        if amount is None:
            return "Invalid format: an amount is required."
        raw_category = message.category() or "Uncategorized"
        category = CategoryResolver(self.session, user.id).resolve(raw_category)
        description = message.description()
        outcome = TransactionService(self.session, user.id).create(
            TransactionIn(
                type=kind,
                amount_cents=amount,
                category=category,
                description=description,
            ),
            source=TransactionSource.chat,
        )
        label = "Income" if kind == TransactionType.income else "Expense"
        reply = (
            f"{label} recorded:\n"
            f"Amount: {format_money(outcome.transaction.amount_cents)}\n"
            f"Category: {category}\n"
            f"Description: {description}"
        )
        for alert in outcome.alerts:
            reply += f"\n\n{alert}"
        return reply

    def _set_budget(self, message: ChatMessage, user: User) -> str:
        amount = message.amount_cents()
        raw_category = message.category()
        if amount is None or raw_category is None:
            return (
                "Invalid format.\n"
                'Example: "set budget 1000000 for food this month"'
            )
        period = message.period()
        category = CategoryResolver(self.session, user.id).resolve(raw_category)
        budget = BudgetService(self.session, user.id).set_category_allocation(
            category, amount, period=period
        )
        return (
            "Budget set:\n"
            f"Amount: {format_money(amount)}\n"
            f"Category: {category}\n"
            f"Period: {period.value} ({budget.start_date:%d/%m/%Y} - "
            f"{budget.end_date:%d/%m/%Y})"
        )

    def _view_budget(self, message: ChatMessage, user: User) -> str:
        period = message.period()
        budget = BudgetService(self.session, user.id).current(period=period)
        if budget is None:
            return "No budget is set for this period."
        status = budget_status(budget)
        lines = [
            f"*Budget status {period.value} ({budget.start_date:%d/%m/%Y} - "
            f"{budget.end_date:%d/%m/%Y})*",
            "",
            f"Total budget: {format_money(status.total_budget_cents)}",
            f"Total spent: {format_money(status.total_spent_cents)}",
            f"Remaining: {format_money(status.remaining_budget_cents)}",
            f"Used: {round(status.spent_percentage)}%",
            "",
            "*Per category:*",
        ]
        for cat in status.category_status:
            lines.append(
                f"{cat.category}: {format_money(cat.spent_cents)} of "
                f"{format_money(cat.budgeted_cents)} "
                f"({round(cat.spent_percentage)}%)"
            )
        return "\n".join(lines)

    def _summary(self, message: ChatMessage, user: User) -> str:
        period = message.period()
        window = resolve_report_period(PERIOD_TO_REPORT[period], local_today())
        summary = ReportService(self.session, user.id).summary(window)
        totals = summary["totals"]
        return (
            f"*Financial summary {period.value} ({window.start:%d/%m/%Y} - "
            f"{window.end:%d/%m/%Y})*\n\n"
            f"Income: {format_money(totals['income'])}\n"
            f"Expenses: {format_money(totals['expense'])}\n"
            f"Balance: {format_money(summary['balance'])}"
        )


class ChatTransport(Protocol):
    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def send(self, recipient: str, text: str) -> None: ...


class InMemoryTransport:
    """Transport that keeps outbound replies in memory."""

    def __init__(self) -> None:
        self.connected = False
        self.outbox: list[tuple[str, str]] = []

    def connect(self) -> None:
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    def send(self, recipient: str, text: str) -> None:
        if not self.connected:
            raise RuntimeError("Chat transport is not connected")
        self.outbox.append((recipient, text))


class ChatService:
    def __init__(
        self,
        transport: ChatTransport,
        session_factory: Callable[[], Session],
    ) -> None:
        self.transport = transport
        self.session_factory = session_factory
        self.running = False

    def start(self) -> None:
        if self.running:
            return
        self.transport.connect()
        self.running = True
        logger.info("chat_service: started")

    def stop(self) -> None:
        if not self.running:
            return
        self.transport.disconnect()
        self.running = False
        logger.info("chat_service: stopped")

    def restart(self) -> None:
        logger.info("chat_service: restarting")
        self.stop()
        self.start()

    def receive(self, message: ChatMessage) -> str:
        if not self.running:
            raise RuntimeError("Chat service is not running")
        with self.session_factory() as session:
            reply = ChatHandler(session).handle(message)
        self.transport.send(message.sender, reply)
        return reply
