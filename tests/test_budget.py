from mailassist.model.budget import ApiUsageLog, BudgetUsage
from mailassist.service.budget_service import (
    calculate_cost, check_budget, get_or_create_budget, log_api_usage,
)


def test_calculate_cost_rounds_up():
    assert calculate_cost(0, 0) == 0
    assert calculate_cost(1000, 200) == 1
    assert calculate_cost(1_000_000, 1_000_000) == 1800


def test_check_budget_without_row_is_allowed(db, user):
    db.query(BudgetUsage).delete()
    db.commit()
    assert check_budget(db, user.id) == {"allowed": True, "remaining": 1000, "reason": None}


def test_check_budget_paused_and_exhausted(db, user):
    budget = get_or_create_budget(db, user.id)
    budget.is_paused = True
    db.commit()
    assert check_budget(db, user.id)["reason"] == "预算已暂停"

    budget.is_paused = False
    budget.estimated_cost_cents = budget.budget_limit_cents
    db.commit()
    result = check_budget(db, user.id)
    assert result["allowed"] is False
    assert result["reason"] == "已达到预算上限"


def test_log_api_usage_updates_counters(db, user):
    cost = log_api_usage(db, user.id, None, "analyze_email", 1000, 200)
    log_api_usage(db, user.id, None, "analyze_email", success=False, error="boom")
    assert cost == 1

    budget = get_or_create_budget(db, user.id)
    db.refresh(budget)
    assert budget.api_calls_total == 2
    assert budget.api_calls_claude == 2
    assert budget.tokens_input == 1000
    assert budget.tokens_output == 200
    assert budget.estimated_cost_cents == 1

    logs = db.query(ApiUsageLog).order_by(ApiUsageLog.id).all()
    assert [log.success for log in logs] == [True, False]
    assert logs[1].error_message == "boom"
    assert logs[0].api_provider == "claude"


def test_budget_status_endpoint(client, auth_headers, db, user):
    log_api_usage(db, user.id, None, "generate_draft", 1000, 200)
    response = client.get("/api/budget/status", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["budget"]["apiCallsTotal"] == 1
    assert data["budget"]["budgetLimitCents"] == 1000
    assert data["budget"]["percentUsed"] == 0
    assert data["budget"]["alertsSent"] == 0
    assert len(data["recentUsage"]) == 1
    assert data["recentUsage"][0]["operation"] == "generate_draft"


def test_budget_update_validates_and_clears_reason(client, auth_headers):
    negative = client.patch("/api/budget/update", headers=auth_headers, json={"budget_limit_cents": -1})
    assert negative.status_code == 400

    empty = client.patch("/api/budget/update", headers=auth_headers, json={})
    assert empty.status_code == 400

    paused = client.patch("/api/budget/update", headers=auth_headers, json={
        "budget_limit_cents": 2500, "is_paused": True, "pause_reason": "月底控制开销",
    })
    assert paused.status_code == 200
    budget = paused.json()["data"]["budget"]
    assert budget["budgetLimitCents"] == 2500
    assert budget["isPaused"] is True
    assert budget["pauseReason"] == "月底控制开销"

    resumed = client.patch("/api/budget/update", headers=auth_headers, json={"is_paused": False})
    assert resumed.json()["data"]["budget"]["pauseReason"] is None
