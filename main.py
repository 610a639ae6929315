import logging
import math
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from budget_status import budget_status
from chat import ChatMessage, ChatService, InMemoryTransport, Intent
from config import get_settings
from database import SessionLocal
from models import BudgetPeriod, TransactionSource, TransactionType, User, UserRole
from periods import (
    Period,
    local_today,
    month_end,
    month_start,
    resolve_report_period,
)
from schemas import (
    ActivationCodeIn,
    ActivationCodeOut,
    ActivationExtendIn,
    ActivationRequest,
    BudgetIn,
    BudgetOut,
    ChatMessageIn,
    PhoneDeactivateIn,
    TransactionIn,
    TransactionOut,
    UserIn,
    UserOut,
)
from services import (
    ActivationService,
    AdminService,
    BudgetConflictError,
    BudgetService,
    ConcurrentModificationError,
    NotFoundError,
    ReportService,
    TransactionFilters,
    TransactionOutcome,
    TransactionService,
    UserService,
)
from tokens import generate_access_token, resolve_access_token


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Bot API")
bearer = HTTPBearer(auto_error=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


chat_service = ChatService(InMemoryTransport(), SessionLocal)


def get_chat_service() -> ChatService:
    return chat_service


@app.on_event("startup")
def startup_event():
    chat_service.start()


@app.on_event("shutdown")
def shutdown_event():
    chat_service.stop()


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    user_id = resolve_access_token(credentials.credentials)
    user = db.get(User, user_id) if user_id is not None else None
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


def admin_user(user: User = Depends(current_user)) -> User:
    if user.role != UserRole.admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (BudgetConflictError, ConcurrentModificationError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _ok(data=None, status_code: int = 200, **extra) -> JSONResponse:
    payload = {"success": True}
    if data is not None:
        payload["data"] = data
    payload.update(extra)
    return JSONResponse(jsonable_encoder(payload), status_code=status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"success": False, "message": str(exc.detail)},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    parts = []
    for error in exc.errors():
        field = ".".join(str(p) for p in error.get("loc", ())[1:])
        parts.append(f"{field}: {error.get('msg')}" if field else error.get("msg"))
    return JSONResponse(
        {"success": False, "message": "; ".join(parts) or "Invalid request"},
        status_code=400,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"request_failed: path={request.url.path}")
    return JSONResponse(
        {"success": False, "message": "Internal server error"}, status_code=500
    )


def _budget_payload(budget) -> dict:
    return BudgetOut.model_validate(budget).model_dump(mode="json")


def _transaction_payload(txn) -> dict:
    return TransactionOut.model_validate(txn).model_dump(mode="json")


def _outcome_response(outcome: TransactionOutcome, status_code: int = 200):
    return _ok(
        _transaction_payload(outcome.transaction),
        status_code=status_code,
        alerts=outcome.alerts,
    )


@app.get("/health")
def health():
    return _ok({"status": "ok"})


# Users


@app.post("/users")
def create_user(
    data: UserIn, db: Session = Depends(get_db), _: User = Depends(admin_user)
):
    try:
        user = UserService(db).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(
        {
            "user": UserOut.model_validate(user).model_dump(mode="json"),
            "token": generate_access_token(user.id),
        },
        status_code=201,
    )


@app.get("/users/me")
def read_me(user: User = Depends(current_user)):
    return _ok(UserOut.model_validate(user).model_dump(mode="json"))


@app.get("/users/phones")
def list_phones(db: Session = Depends(get_db), user: User = Depends(current_user)):
    return _ok(ActivationService(db).phones(user.id))


@app.delete("/users/phones/{phone_number}")
def remove_phone(
    phone_number: str,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        ActivationService(db).remove_phone(user.id, phone_number)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(message="Phone number removed")


@app.get("/users/dashboard")
def dashboard(db: Session = Depends(get_db), user: User = Depends(current_user)):
    data = ReportService(db, user.id).dashboard()
    data["recent_transactions"] = [
        _transaction_payload(txn) for txn in data["recent_transactions"]
    ]
    return _ok(data)


# Transactions


@app.get("/transactions")
def list_transactions(
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    source: Optional[TransactionSource] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    min_amount: Optional[int] = Query(default=None, ge=0),
    max_amount: Optional[int] = Query(default=None, ge=0),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    filters = TransactionFilters(
        type=type,
        category=category,
        source=source,
        start_date=start_date,
        end_date=end_date,
        min_amount_cents=min_amount,
        max_amount_cents=max_amount,
    )
    items, total = TransactionService(db, user.id).list(filters, page, limit)
    return _ok(
        [_transaction_payload(txn) for txn in items],
        pagination={
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    )


@app.get("/transactions/summary/period")
def transaction_period_summary(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    today = local_today()
    start = start_date or month_start(today)
    end = end_date or month_end(today)
    if start > end:
        raise HTTPException(
            status_code=400, detail="Start date must not be after end date"
        )
    return _ok(ReportService(db, user.id).summary(Period("custom", start, end)))


@app.post("/transactions")
def create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        outcome = TransactionService(db, user.id).create(data, TransactionSource.web)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _outcome_response(outcome, status_code=201)


@app.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        txn = TransactionService(db, user.id).get(transaction_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(_transaction_payload(txn))


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        outcome = TransactionService(db, user.id).update(transaction_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _outcome_response(outcome)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        TransactionService(db, user.id).delete(transaction_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok()


# Budgets


@app.post("/budgets")
def create_budget(
    data: BudgetIn, db: Session = Depends(get_db), user: User = Depends(current_user)
):
    try:
        budget = BudgetService(db, user.id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(_budget_payload(budget), status_code=201)


@app.get("/budgets")
def list_budgets(
    active: Optional[bool] = None,
    period: Optional[BudgetPeriod] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    budgets = BudgetService(db, user.id).list(
        active=active, period=period, start_date=start_date, end_date=end_date
    )
    return _ok([_budget_payload(budget) for budget in budgets])


@app.get("/budgets/current")
def current_budget(
    db: Session = Depends(get_db), user: User = Depends(current_user)
):
    today = local_today()
    budget = BudgetService(db, user.id).current(today=today)
    if budget is None:
        raise HTTPException(status_code=404, detail="No active budget found")
    recent = TransactionService(db, user.id).expenses_between(
        budget.start_date, min(today, budget.end_date), limit=5
    )
    return _ok(
        {
            "budget": _budget_payload(budget),
            "status": budget_status(budget).as_dict(),
            "recent_transactions": [_transaction_payload(txn) for txn in recent],
        }
    )


@app.get("/budgets/analysis/overview")
def budget_overview(
    months: int = Query(default=6, ge=1, le=120),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    return _ok(BudgetService(db, user.id).overview(months))


@app.get("/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        budget = BudgetService(db, user.id).get(budget_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    transactions = TransactionService(db, user.id).expenses_between(
        budget.start_date, budget.end_date
    )
    return _ok(
        {
            "budget": _budget_payload(budget),
            "status": budget_status(budget).as_dict(),
            "transactions": [_transaction_payload(txn) for txn in transactions],
        }
    )


@app.put("/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    data: BudgetIn,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        budget = BudgetService(db, user.id).update(budget_id, data)
    except (ValueError, ConcurrentModificationError) as exc:
        raise _http_error(exc) from exc
    return _ok(_budget_payload(budget))


@app.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        BudgetService(db, user.id).delete(budget_id)
    except (ValueError, ConcurrentModificationError) as exc:
        raise _http_error(exc) from exc
    return _ok()


# Reports


@app.get("/reports/summary")
def report_summary(
    period: str = "month",
    anchor: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        window = resolve_report_period(period, anchor)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(ReportService(db, user.id).summary(window))


@app.get("/reports/trends")
def report_trends(
    months: int = Query(default=12, ge=1, le=120),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    return _ok(ReportService(db, user.id).trends(months))


@app.get("/reports/analysis")
def report_analysis(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        data = ReportService(db, user.id).analysis(start_date, end_date)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(data)


# Activations


@app.post("/activations")
def issue_activation_code(
    data: ActivationCodeIn,
    db: Session = Depends(get_db),
    _: User = Depends(admin_user),
):
    try:
        code = ActivationService(db).issue(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(
        ActivationCodeOut.model_validate(code).model_dump(mode="json"),
        status_code=201,
    )


@app.post("/activations/verify")
def verify_activation(data: ActivationRequest, db: Session = Depends(get_db)):
    try:
        check = ActivationService(db).verify(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(
        {
            "expires_at": check.expires_at,
            "max_phone_numbers": check.max_phone_numbers,
            "used_phone_numbers": len(check.used_phone_numbers),
        },
        message="Activation code is valid",
    )


@app.post("/activations/activate")
def activate_phone(data: ActivationRequest, db: Session = Depends(get_db)):
    try:
        binding = ActivationService(db).activate(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(
        {"phone_number": binding.phone_number, "expires_at": binding.expires_at},
        message="Phone number activated",
    )


@app.get("/activations/status")
def activation_status(
    phone_number: str,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    try:
        status = ActivationService(db).status(user.id, phone_number)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(status)


@app.post("/activations/deactivate")
def deactivate_phone(
    data: PhoneDeactivateIn,
    db: Session = Depends(get_db),
    _: User = Depends(admin_user),
):
    try:
        ActivationService(db).deactivate(data.user_id, data.phone_number)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(message="Phone number deactivated")


@app.post("/activations/extend")
def extend_activation(
    data: ActivationExtendIn,
    db: Session = Depends(get_db),
    _: User = Depends(admin_user),
):
    try:
        UserService(db).get(data.user_id)
        binding = ActivationService(db).extend(
            data.user_id, data.phone_number, data.duration_days
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _ok(
        {"phone_number": binding.phone_number, "expires_at": binding.expires_at},
        message="Activation period extended",
    )


# Admin


@app.get("/admin/users")
def admin_list_users(db: Session = Depends(get_db), _: User = Depends(admin_user)):
    users = UserService(db).list()
    return _ok([UserOut.model_validate(u).model_dump(mode="json") for u in users])


@app.get("/admin/activation-codes")
def admin_list_codes(
    active: bool = False,
    user_id: Optional[int] = None,
    db: Session = Depends(get_db),
    _: User = Depends(admin_user),
):
    codes = ActivationService(db).list_codes(active=active, user_id=user_id)
    return _ok(
        [ActivationCodeOut.model_validate(c).model_dump(mode="json") for c in codes]
    )


@app.get("/admin/stats")
def admin_stats(db: Session = Depends(get_db), _: User = Depends(admin_user)):
    stats = AdminService(db).stats()
    stats["recent_activity"] = [
        _transaction_payload(txn) for txn in stats["recent_activity"]
    ]
    return _ok(stats)


# Chat


@app.post("/chat/messages")
def receive_chat_message(
    data: ChatMessageIn,
    service: ChatService = Depends(get_chat_service),
    _: User = Depends(admin_user),
):
    if not service.running:
        raise HTTPException(status_code=503, detail="Chat service is not running")
    message = ChatMessage(
        sender=data.sender,
        body=data.body,
        intent=Intent.parse(data.intent),
        entities={item.entity: item.value for item in data.entities},
    )
    return _ok({"reply": service.receive(message)})


@app.get("/chat/status")
def chat_status(
    service: ChatService = Depends(get_chat_service),
    _: User = Depends(current_user),
):
    return _ok({"running": service.running})


@app.post("/chat/restart")
def restart_chat(
    service: ChatService = Depends(get_chat_service),
    _: User = Depends(admin_user),
):
    service.restart()
    return _ok({"running": service.running})


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
