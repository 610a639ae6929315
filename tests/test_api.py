from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chat import ChatService, InMemoryTransport
from database import Base
from main import app, get_chat_service, get_db
from models import BudgetPeriod, User, UserRole
from periods import budget_window, local_today
from tokens import generate_access_token


@pytest.fixture()
def env():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    chat_service = ChatService(InMemoryTransport(), TestingSession)
    chat_service.start()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chat_service] = lambda: chat_service

    with TestingSession() as db:
        admin = User(username="admin", role=UserRole.admin)
        alice = User(username="alice", role=UserRole.user)
        db.add_all([admin, alice])
        db.commit()
        tokens = {
            "admin": generate_access_token(admin.id),
            "alice": generate_access_token(alice.id),
        }

    yield TestClient(app), tokens
    app.dependency_overrides.clear()


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _budget_body(start: date, end: date, amount: int = 1_000_000, **extra) -> dict:
    return {
        "period": "monthly",
        "total_budget_cents": amount,
        "categories": [{"category": "food", "amount_cents": amount}],
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        **extra,
    }


def test_requests_without_token_are_rejected(env) -> None:
    client, _ = env

    resp = client.get("/budgets")

    assert resp.status_code == 401
    assert resp.json() == {"success": False, "message": "Authentication required"}


def test_budget_flow_with_alerts(env) -> None:
    client, tokens = env
    headers = _auth(tokens["alice"])

    created = client.post(
        "/budgets",
        json=_budget_body(date(2024, 1, 1), date(2024, 1, 31)),
        headers=headers,
    )
    assert created.status_code == 201
    budget_id = created.json()["data"]["id"]

    txn = client.post(
        "/transactions",
        json={
            "type": "expense",
            "amount_cents": 900_000,
            "category": "food",
            "description": "groceries",
            "date": "2024-01-15T10:00:00",
        },
        headers=headers,
    )
    assert txn.status_code == 201
    assert txn.json()["alerts"] == ["Spending on food has reached 90% of its budget!"]

    detail = client.get(f"/budgets/{budget_id}", headers=headers).json()["data"]
    assert detail["status"]["is_critical"] is True
    assert detail["status"]["remaining_budget_cents"] == 100_000
    assert len(detail["transactions"]) == 1


def test_overlap_and_sum_errors_use_envelope(env) -> None:
    client, tokens = env
    headers = _auth(tokens["alice"])
    client.post(
        "/budgets",
        json=_budget_body(date(2024, 1, 1), date(2024, 1, 31)),
        headers=headers,
    )

    overlap = client.post(
        "/budgets",
        json=_budget_body(date(2024, 1, 15), date(2024, 2, 15)),
        headers=headers,
    )
    assert overlap.status_code == 409
    assert overlap.json()["success"] is False

    body = _budget_body(date(2024, 3, 1), date(2024, 3, 31))
    body["total_budget_cents"] = 5
    mismatch = client.post("/budgets", json=body, headers=headers)
    assert mismatch.status_code == 400
    assert mismatch.json()["message"] == "Category totals must equal total budget"


def test_request_validation_is_a_400(env) -> None:
    client, tokens = env

    resp = client.post(
        "/transactions",
        json={"type": "expense", "amount_cents": 0, "category": "food"},
        headers=_auth(tokens["alice"]),
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert "amount_cents" in body["message"]


def test_stale_budget_version_is_a_conflict(env) -> None:
    client, tokens = env
    headers = _auth(tokens["alice"])
    budget = client.post(
        "/budgets",
        json=_budget_body(date(2024, 1, 1), date(2024, 1, 31)),
        headers=headers,
    ).json()["data"]

    ok = client.put(
        f"/budgets/{budget['id']}",
        json=_budget_body(date(2024, 1, 1), date(2024, 1, 31), 2_000, version=1),
        headers=headers,
    )
    assert ok.status_code == 200
    assert ok.json()["data"]["version"] == 2

    stale = client.put(
        f"/budgets/{budget['id']}",
        json=_budget_body(date(2024, 1, 1), date(2024, 1, 31), 3_000, version=1),
        headers=headers,
    )
    assert stale.status_code == 409


def test_budgets_are_owner_scoped(env) -> None:
    client, tokens = env
    budget = client.post(
        "/budgets",
        json=_budget_body(date(2024, 1, 1), date(2024, 1, 31)),
        headers=_auth(tokens["alice"]),
    ).json()["data"]

    resp = client.get(f"/budgets/{budget['id']}", headers=_auth(tokens["admin"]))

    assert resp.status_code == 404
    assert resp.json()["message"] == "Budget not found"


def test_current_budget_and_missing_current(env) -> None:
    client, tokens = env
    headers = _auth(tokens["alice"])

    missing = client.get("/budgets/current", headers=headers)
    assert missing.status_code == 404

    window = budget_window(BudgetPeriod.monthly, today=local_today())
    client.post(
        "/budgets",
        json=_budget_body(window.start, window.end),
        headers=headers,
    )
    client.post(
        "/transactions",
        json={
            "type": "expense",
            "amount_cents": 1_000,
            "category": "food",
            "description": "snack",
        },
        headers=headers,
    )

    current = client.get("/budgets/current", headers=headers).json()["data"]
    assert current["status"]["total_spent_cents"] == 1_000
    assert len(current["recent_transactions"]) == 1


def test_transaction_listing_paginates(env) -> None:
    client, tokens = env
    headers = _auth(tokens["alice"])
    for day in range(1, 4):
        client.post(
            "/transactions",
            json={
                "type": "income",
                "amount_cents": day * 100,
                "category": "salary",
                "description": "pay",
                "date": f"2024-01-0{day}T09:00:00",
            },
            headers=headers,
        )

    resp = client.get("/transactions?limit=2&page=2", headers=headers).json()

    assert resp["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert [t["amount_cents"] for t in resp["data"]] == [100]


def test_delete_transaction_and_not_found(env) -> None:
    client, tokens = env
    headers = _auth(tokens["alice"])
    created = client.post(
        "/transactions",
        json={
            "type": "expense",
            "amount_cents": 500,
            "category": "food",
            "description": "tea",
        },
        headers=headers,
    ).json()["data"]

    assert client.delete(f"/transactions/{created['id']}", headers=headers).json() == {
        "success": True
    }
    again = client.delete(f"/transactions/{created['id']}", headers=headers)
    assert again.status_code == 404


def test_report_period_must_be_known(env) -> None:
    client, tokens = env

    resp = client.get("/reports/summary?period=decade", headers=_auth(tokens["alice"]))

    assert resp.status_code == 400


def test_admin_only_routes(env) -> None:
    client, tokens = env

    denied = client.post(
        "/activations", json={"user_id": 2}, headers=_auth(tokens["alice"])
    )
    assert denied.status_code == 403

    issued = client.post(
        "/activations", json={"user_id": 2}, headers=_auth(tokens["admin"])
    )
    assert issued.status_code == 201
    code = issued.json()["data"]["code"]

    activated = client.post(
        "/activations/activate",
        json={
            "username": "alice",
            "activation_code": code,
            "phone_number": "+628123456789",
        },
    )
    assert activated.status_code == 200

    status = client.get(
        "/activations/status?phone_number=%2B628123456789",
        headers=_auth(tokens["alice"]),
    ).json()["data"]
    assert status["is_active"] is True


def test_chat_endpoint_replies(env) -> None:
    client, tokens = env

    resp = client.post(
        "/chat/messages",
        json={"sender": "+620000000001", "body": "help", "intent": "help"},
        headers=_auth(tokens["admin"]),
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["reply"].startswith("Your number is not registered")
    running = client.get("/chat/status", headers=_auth(tokens["alice"])).json()
    assert running["data"] == {"running": True}


def _activate(client, tokens, user_id: int, username: str, phone: str):
    code = client.post(
        "/activations", json={"user_id": user_id}, headers=_auth(tokens["admin"])
    ).json()["data"]["code"]
    return client.post(
        "/activations/activate",
        json={"username": username, "activation_code": code, "phone_number": phone},
    )


def test_bound_number_cannot_be_claimed_by_admin_code(env) -> None:
    client, tokens = env
    assert _activate(client, tokens, 2, "alice", "+628123456789").status_code == 200

    claimed = _activate(client, tokens, 1, "admin", "+628123456789")

    assert claimed.status_code == 400
    assert claimed.json()["message"] == "Phone number is already activated"


def test_phone_listing_extension_and_removal(env) -> None:
    client, tokens = env
    alice = _auth(tokens["alice"])
    _activate(client, tokens, 2, "alice", "+628123456789")
    before = client.get("/users/phones", headers=alice).json()["data"][0]

    extended = client.post(
        "/activations/extend",
        json={"user_id": 2, "phone_number": "+628123456789", "duration_days": 10},
        headers=_auth(tokens["admin"]),
    )
    assert extended.status_code == 200
    assert extended.json()["data"]["expires_at"] > before["expires_at"]

    removed = client.delete("/users/phones/+628123456789", headers=alice)
    assert removed.status_code == 200
    assert client.get("/users/phones", headers=alice).json()["data"] == []


def test_admin_listings_and_stats(env) -> None:
    client, tokens = env
    admin = _auth(tokens["admin"])
    client.post("/activations", json={"user_id": 2}, headers=admin)

    users = client.get("/admin/users", headers=admin).json()["data"]
    assert [u["username"] for u in users] == ["admin", "alice"]
    codes = client.get("/admin/activation-codes?active=true", headers=admin).json()
    assert len(codes["data"]) == 1
    stats = client.get("/admin/stats", headers=admin).json()["data"]
    assert stats["users"]["total"] == 2
    assert stats["activation_codes"]["active"] == 1

    assert client.get("/admin/stats", headers=_auth(tokens["alice"])).status_code == 403


def test_dashboard_and_period_summary(env) -> None:
    client, tokens = env
    headers = _auth(tokens["alice"])
    client.post(
        "/transactions",
        json={
            "type": "expense",
            "amount_cents": 1_500,
            "category": "food",
            "description": "lunch",
            "date": "2024-01-10T12:00:00",
        },
        headers=headers,
    )

    summary = client.get(
        "/transactions/summary/period?start_date=2024-01-01&end_date=2024-01-31",
        headers=headers,
    ).json()["data"]
    assert summary["totals"] == {"income": 0, "expense": 1_500}
    assert summary["categories"]["expense"][0]["category"] == "food"

    inverted = client.get(
        "/transactions/summary/period?start_date=2024-02-01&end_date=2024-01-01",
        headers=headers,
    )
    assert inverted.status_code == 400

    dashboard = client.get("/users/dashboard", headers=headers).json()["data"]
    assert dashboard["budget"] is None
    assert len(dashboard["recent_transactions"]) == 1
