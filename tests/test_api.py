from datetime import timedelta

from sqlalchemy.exc import OperationalError

import ledger
from conftest import TODAY


def register(client, username="alice", email="alice@example.com", password="secret1"):
    return client.post(
        "/api/users/register",
        json={"name": "Alice", "username": username, "email": email, "password": password},
    )


def create_goal(client, goal_amount=1000, start_date="2024-01-01", end_date="2024-12-31", **extra):
    body = {"name": "Laptop", "goal_amount": goal_amount, "start_date": start_date, "end_date": end_date}
    body.update(extra)
    response = client.post("/api/goals", json=body)
    assert response.status_code == 201
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_register_hides_password_and_rejects_duplicates(client):
    response = register(client)
    assert response.status_code == 201
    body = response.json()
    assert body["username"] == "alice"
    assert "password" not in body and "password_hash" not in body

    duplicate = register(client, email="other@example.com")
    assert duplicate.status_code == 409
    assert duplicate.json() == {"success": False, "error": {"message": "Username already exists"}}

    duplicate_email = register(client, username="alice2", email="ALICE@example.com")
    assert duplicate_email.status_code == 409
    assert duplicate_email.json()["error"]["message"] == "Email already exists"


def test_login(client):
    register(client)

    ok = client.post("/api/users/login", json={"username": "alice", "password": "secret1"})
    assert ok.status_code == 200
    assert ok.json()["email"] == "alice@example.com"

    bad = client.post("/api/users/login", json={"username": "alice", "password": "wrong-one"})
    assert bad.status_code == 401
    assert bad.json()["success"] is False


def test_payload_validation(client):
    assert register(client, password="123").status_code == 422
    assert client.post("/api/goals", json={"name": "X", "goal_amount": 10}).status_code == 422


def test_contribution_flow_keeps_saved_amount(client):
    goal = create_goal(client)
    assert goal["saved_amount"] == 0

    first = client.post(f"/api/goals/{goal['id']}/contributions", json={"amount": 100, "date": "2024-02-01"})
    second = client.post(f"/api/goals/{goal['id']}/contributions", json={"amount": 50, "date": "2024-03-01"})
    assert first.status_code == 201 and second.status_code == 201
    assert client.get(f"/api/goals/{goal['id']}").json()["saved_amount"] == 150

    listed = client.get(f"/api/goals/{goal['id']}/contributions").json()
    assert [c["id"] for c in listed] == [second.json()["id"], first.json()["id"]]

    updated = client.put(f"/api/contributions/{second.json()['id']}", json={"amount": 30})
    assert updated.status_code == 200
    assert updated.json()["amount"] == 30
    assert client.get(f"/api/goals/{goal['id']}").json()["saved_amount"] == 130

    assert client.delete(f"/api/contributions/{second.json()['id']}").status_code == 204
    assert client.get(f"/api/goals/{goal['id']}").json()["saved_amount"] == 100


def test_contribution_defaults_to_today(client):
    goal = create_goal(client)
    response = client.post(f"/api/goals/{goal['id']}/contributions", json={"amount": 12.5})
    assert response.json()["date"] == TODAY.isoformat()


def test_contribution_errors(client):
    missing = client.post("/api/goals/999/contributions", json={"amount": 10})
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "error": {"message": "Goal 999 not found"}}

    goal = create_goal(client)
    assert client.post(f"/api/goals/{goal['id']}/contributions", json={"amount": 0}).status_code == 422
    assert client.delete("/api/contributions/999").status_code == 404


def test_goal_opening_balance_and_recalculate(client):
    goal = create_goal(client, saved_amount=300)
    assert goal["saved_amount"] == 300

    contributions = client.get(f"/api/goals/{goal['id']}/contributions").json()
    assert [(c["amount"], c["date"]) for c in contributions] == [(300, "2024-01-01")]

    response = client.post(f"/api/goals/{goal['id']}/recalculate")
    assert response.json() == {"goal_id": goal["id"], "saved_amount": 300}


def test_goal_progress_endpoint(client):
    end_date = (TODAY + timedelta(days=10)).isoformat()
    goal = create_goal(client, end_date=end_date)
    client.post(f"/api/goals/{goal['id']}/contributions", json={"amount": 250, "date": "2024-02-01"})

    progress = client.get(f"/api/goals/{goal['id']}/progress").json()

    assert progress["progress"] == 25.0
    assert progress["remaining_days"] == 10
    assert progress["is_overdue"] is False


def test_goal_reports_use_envelope(client):
    end_date = (TODAY + timedelta(days=10)).isoformat()
    goal = create_goal(client, end_date=end_date)
    client.post(f"/api/goals/{goal['id']}/contributions", json={"amount": 250, "date": "2024-06-10"})

    overview = client.get("/api/goal-reports/overview").json()
    assert overview["success"] is True
    assert overview["data"]["goals"][0]["progress"] == 25.0
    assert overview["data"]["goals"][0]["transaction_count"] == 1

    at_risk = client.get("/api/goal-reports/at-risk").json()["data"]
    assert at_risk["total_at_risk"] == 1
    assert at_risk["at_risk_goals"][0]["risk_level"] == "high"

    for path in ("transactions", "progress", "top-performers", "contribution-trends", "completion-forecast"):
        response = client.get(f"/api/goal-reports/{path}")
        assert response.status_code == 200
        assert response.json()["success"] is True


def test_transactions_and_financial_reports(client):
    user_id = register(client).json()["id"]
    salary = client.post("/api/categories", json={"name": "Salary"}).json()
    food = client.post("/api/categories", json={"name": "Food"}).json()

    income = client.post(
        "/api/transactions",
        json={"category_id": salary["id"], "amount": 100, "type": "income", "date": "2024-06-01"},
        headers={"x-user-id": str(user_id)},
    )
    assert income.status_code == 201
    assert income.json()["user_id"] == user_id
    client.post(
        "/api/transactions",
        json={"user_id": user_id, "category_id": food["id"], "amount": 40, "type": "expense", "date": "2024-06-02"},
    )

    report = client.get("/api/reports/financial").json()
    assert report["success"] is True
    assert report["data"]["summary"]["net_balance"] == 60

    summary = client.get("/api/transactions/reports/summary", params={"type": "expense"}).json()
    assert summary["summary"]["total_expense"] == 40
    assert summary["summary"]["total_income"] == 0

    listed = client.get("/api/transactions", params={"user_ids": [user_id], "sort": "amount", "order": "DESC"}).json()
    assert [t["amount"] for t in listed["data"]] == [100, 40]
    assert listed["pagination"]["total"] == 2

    for path in ("income-expense", "categories", "monthly-trends", "spending-insights"):
        response = client.get(f"/api/reports/{path}")
        assert response.status_code == 200
        assert response.json()["success"] is True

    in_use = client.delete(f"/api/categories/{food['id']}")
    assert in_use.status_code == 409


def test_transaction_requires_owner(client):
    category = client.post("/api/categories", json={"name": "Misc"}).json()
    response = client.post(
        "/api/transactions",
        json={"category_id": category["id"], "amount": 10, "type": "expense", "date": "2024-06-01"},
    )
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_category_pagination(client):
    for name in ("A", "B", "C"):
        client.post("/api/categories", json={"name": name})

    page = client.get("/api/categories", params={"limit": 2, "page": 2}).json()

    assert [c["name"] for c in page["data"]] == ["C"]
    assert page["pagination"]["total_pages"] == 2
    assert page["pagination"]["has_next_page"] is False
    assert client.get("/api/categories", params={"limit": 500}).status_code == 422


def test_user_crud(client):
    user_id = register(client).json()["id"]

    renamed = client.put(f"/api/users/{user_id}", json={"name": "Alice Smith"})
    assert renamed.json()["name"] == "Alice Smith"

    assert client.delete(f"/api/users/{user_id}").status_code == 204
    assert client.get(f"/api/users/{user_id}").status_code == 404


def test_storage_failure_returns_500_envelope(client, monkeypatch):
    goal = create_goal(client)

    def broken_shift(session, goal_id, delta):
        raise OperationalError("UPDATE save_goals", {}, Exception("disk I/O error"))

    monkeypatch.setattr(ledger, "_shift_saved_amount", broken_shift)

    response = client.post(f"/api/goals/{goal['id']}/contributions", json={"amount": 25, "date": "2024-02-01"})

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": {"message": "Storage operation failed"}}
    assert client.get(f"/api/goals/{goal['id']}").json()["saved_amount"] == 0
    assert client.get(f"/api/goals/{goal['id']}/contributions").json() == []


def test_completion_forecast_with_distant_projection(client):
    start_date = (TODAY - timedelta(days=365)).isoformat()
    goal = create_goal(client, goal_amount=100000, start_date=start_date)
    client.post(f"/api/goals/{goal['id']}/contributions", json={"amount": 1, "date": start_date})

    response = client.get("/api/goal-reports/completion-forecast")

    assert response.status_code == 200
    forecast = response.json()["data"]["forecasts"][0]
    assert forecast["estimated_completion_date"] is None
    assert forecast["completion_probability"] == "low"
