import pytest

from mailassist.model.budget import ApiUsageLog
from mailassist.service import llm_service
from mailassist.service.budget_service import BudgetExceededError, get_or_create_budget


def test_analyze_email_strips_code_fences(db, user, account, make_email, fake_claude):
    email = make_email(account, body_text="x" * 8000)
    analysis = llm_service.analyze_email(db, user.id, email)

    assert analysis["priority_level"] == "high"
    prompt = fake_claude.messages.calls[0]["messages"][0]["content"]
    assert "x" * 5000 in prompt and "x" * 5001 not in prompt
    log = db.query(ApiUsageLog).one()
    assert log.operation == "analyze_email"
    assert log.success is True
    assert log.email_id == email.id


def test_invalid_json_is_reported_and_logged(db, user, account, make_email, fake_claude):
    fake_claude.messages.default = "这不是JSON"
    email = make_email(account)
    with pytest.raises(llm_service.InvalidAIResponseError, match="AI 响应格式无效"):
        llm_service.analyze_email(db, user.id, email)

    log = db.query(ApiUsageLog).one()
    assert log.success is False
    assert log.tokens_input == 0
    assert log.error_message == "AI 响应格式无效"


def test_budget_gate_blocks_before_calling_model(db, user, account, make_email, fake_claude):
    budget = get_or_create_budget(db, user.id)
    budget.is_paused = True
    db.commit()

    with pytest.raises(BudgetExceededError):
        llm_service.generate_draft_reply(db, user.id, make_email(account))
    assert fake_claude.messages.calls == []


def test_category_summary_limits_emails_and_tokens(db, user, account, make_email, fake_claude):
    fake_claude.messages.default = "  本周工作邮件主要涉及报价。  "
    emails = [make_email(account, category="work") for _ in range(3)]
    summary = llm_service.generate_category_summary(db, user.id, emails, "work")

    assert summary == "本周工作邮件主要涉及报价。"
    call = fake_claude.messages.calls[0]
    assert call["max_tokens"] == 500
    assert "3. From: sender@example.com" in call["messages"][0]["content"]
    assert db.query(ApiUsageLog).one().operation == "category_summary"
