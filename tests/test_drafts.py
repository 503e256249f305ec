import json

from mailassist.model.draft import EmailDraft
from mailassist.service import email_sender
from mailassist.service.budget_service import get_or_create_budget

DRAFT_JSON = json.dumps({
    "subject": "Re: 报价",
    "body_text": "您好，报价单见附件。",
    "body_html": "<p>您好，报价单见附件。</p>",
    "confidence_score": 0.9,
    "notes": "礼貌确认",
})


def test_create_draft_with_ai(client, auth_headers, account, make_email, fake_claude):
    email = make_email(account, subject="报价", body_text="请发报价")
    fake_claude.messages.default = DRAFT_JSON

    response = client.post("/api/drafts/create", headers=auth_headers,
                           json={"email_id": email.id, "tone": "friendly", "instructions": "简短"})
    assert response.status_code == 201, response.text
    draft = response.json()["data"]
    assert draft["subject"] == "Re: 报价"
    assert draft["draft_content"] == "您好，报价单见附件。"
    assert draft["confidence_score"] == 0.9
    assert draft["status"] == "pending"
    assert draft["email_subject"] == "报价"
    assert draft["email_from"] == "sender@example.com"

    prompt = fake_claude.messages.calls[0]["messages"][0]["content"]
    assert "Tone: friendly" in prompt
    assert "Additional instructions: 简短" in prompt


def test_create_manual_draft_skips_ai(client, auth_headers, account, make_email, fake_claude):
    email = make_email(account)
    response = client.post("/api/drafts/create", headers=auth_headers,
                           json={"email_id": email.id, "skip_ai": True, "draft_content": "收到，谢谢"})
    assert response.status_code == 201
    assert response.json()["data"]["draft_content"] == "收到，谢谢"
    assert fake_claude.messages.calls == []


def test_create_draft_errors(client, auth_headers, other_headers, user, account, make_email, db):
    email = make_email(account)

    assert client.post("/api/drafts/create", headers=auth_headers, json={}).status_code == 400
    assert client.post("/api/drafts/create", headers=other_headers, json={"email_id": email.id}).status_code == 404

    budget = get_or_create_budget(db, user.id)
    budget.estimated_cost_cents = budget.budget_limit_cents
    db.commit()
    denied = client.post("/api/drafts/create", headers=auth_headers, json={"email_id": email.id})
    assert denied.status_code == 403
    assert denied.json()["message"] == "已达到预算上限"


def test_create_draft_invalid_ai_response(client, auth_headers, account, make_email, fake_claude, db):
    fake_claude.messages.default = "not json"
    email = make_email(account)
    response = client.post("/api/drafts/create", headers=auth_headers, json={"email_id": email.id})
    assert response.status_code == 500
    assert "AI 响应格式无效" in response.json()["message"]
    assert db.query(EmailDraft).count() == 0


def test_draft_crud(client, auth_headers, other_headers, user, account, make_email, db):
    email = make_email(account)
    draft = EmailDraft(user_id=user.id, email_id=email.id, draft_content="初稿", status="pending")
    db.add(draft)
    db.commit()

    listing = client.get("/api/drafts", headers=auth_headers).json()["data"]
    assert [d["id"] for d in listing] == [draft.id]
    assert client.get("/api/drafts", headers=auth_headers, params={"status": "sent"}).json()["data"] == []
    assert client.get(f"/api/drafts/{draft.id}", headers=other_headers).status_code == 404

    updated = client.patch(f"/api/drafts/{draft.id}", headers=auth_headers,
                           json={"draft_content": "修改稿", "status": "approved"})
    assert updated.status_code == 200
    assert updated.json()["data"]["draft_content"] == "修改稿"
    assert updated.json()["data"]["status"] == "approved"

    assert client.delete(f"/api/drafts/{draft.id}", headers=auth_headers).status_code == 200
    assert client.get(f"/api/drafts/{draft.id}", headers=auth_headers).status_code == 404


def test_send_draft_replies_to_sender(client, auth_headers, user, account, make_email, db, monkeypatch):
    email = make_email(account, subject="报价", message_id="<orig@example.com>")
    draft = EmailDraft(user_id=user.id, email_id=email.id, draft_content="报价如下", status="approved")
    db.add(draft)
    db.commit()
    sent = {}

    def fake_send(db, account_id, to, subject, body, in_reply_to=None):
        sent.update(account_id=account_id, to=to, subject=subject, body=body, in_reply_to=in_reply_to)

    monkeypatch.setattr(email_sender, "send_email", fake_send)
    response = client.post(f"/api/drafts/{draft.id}/send", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "sent"
    assert response.json()["data"]["sent_at"] is not None
    assert sent == {
        "account_id": account.id,
        "to": "sender@example.com",
        "subject": "Re: 报价",
        "body": "报价如下",
        "in_reply_to": "<orig@example.com>",
    }

    again = client.post(f"/api/drafts/{draft.id}/send", headers=auth_headers)
    assert again.status_code == 400


def test_send_failure_marks_draft_failed(client, auth_headers, user, account, make_email, db, monkeypatch):
    email = make_email(account)
    draft = EmailDraft(user_id=user.id, email_id=email.id, draft_content="x", status="approved")
    db.add(draft)
    db.commit()

    def fail(*args, **kwargs):
        raise email_sender.SendError("SMTP 拒绝")

    monkeypatch.setattr(email_sender, "send_email", fail)
    response = client.post(f"/api/drafts/{draft.id}/send", headers=auth_headers)

    assert response.status_code == 500
    db.expire_all()
    failed = db.get(EmailDraft, draft.id)
    assert failed.status == "failed"
    assert failed.error_message == "SMTP 拒绝"
