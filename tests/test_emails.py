import csv
import io
from datetime import datetime, timedelta

from mailassist.model.draft import EmailDraft
from mailassist.model.email import Email
from mailassist.model.budget import ApiUsageLog
from mailassist.service.budget_service import get_or_create_budget


def test_list_paginates_newest_first(client, auth_headers, account, make_email):
    for _ in range(3):
        make_email(account)
    response = client.get("/api/email/list", headers=auth_headers, params={"page": 1, "limit": 2})

    assert response.status_code == 200
    data = response.json()["data"]
    assert [e["subject"] for e in data["emails"]] == ["邮件 3", "邮件 2"]
    assert data["emails"][0]["account_email"] == account.email
    assert data["emails"][0]["provider"] == "custom"
    assert data["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2}


def test_list_filters(client, auth_headers, user, account, make_account, make_email):
    second = make_account(user.id, email="second@example.com")
    make_email(account, priority_level="high", category="work", is_read=True)
    make_email(account, priority_level="low", subject="Invoice 2024", is_starred=True)
    make_email(second, priority_level="high")
    make_email(account, is_deleted=True, priority_level="high")

    def subjects(**params):
        response = client.get("/api/email/list", headers=auth_headers, params=params)
        return sorted(e["subject"] for e in response.json()["data"]["emails"])

    assert subjects(priority="high") == ["邮件 1", "邮件 3"]
    assert subjects(category="work") == ["邮件 1"]
    assert subjects(is_read="false") == ["Invoice 2024", "邮件 3"]
    assert subjects(is_starred="true") == ["Invoice 2024"]
    assert subjects(account_id=second.id) == ["邮件 3"]
    assert subjects(search="invoice") == ["Invoice 2024"]


def test_list_is_scoped_to_user(client, other_headers, account, make_email):
    make_email(account)
    response = client.get("/api/email/list", headers=other_headers)
    assert response.json()["data"]["emails"] == []


def test_get_email_marks_read(client, auth_headers, other_headers, account, make_email, db):
    email = make_email(account)
    response = client.get(f"/api/email/{email.id}", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["data"]["is_read"] is True
    db.expire_all()
    assert db.get(Email, email.id).is_read is True

    assert client.get(f"/api/email/{email.id}", headers=other_headers).status_code == 404
    assert client.get("/api/email/9999", headers=auth_headers).status_code == 404


def test_update_and_soft_delete(client, auth_headers, account, make_email, db):
    email = make_email(account)
    response = client.patch(f"/api/email/{email.id}", headers=auth_headers,
                            json={"is_starred": True, "category": "personal"})
    assert response.status_code == 200
    assert response.json()["data"]["is_starred"] is True
    assert response.json()["data"]["category"] == "personal"

    assert client.patch(f"/api/email/{email.id}", headers=auth_headers, json={}).status_code == 400

    assert client.delete(f"/api/email/{email.id}", headers=auth_headers).status_code == 200
    db.expire_all()
    assert db.get(Email, email.id).is_deleted is True
    assert client.get(f"/api/email/{email.id}", headers=auth_headers).status_code == 404


def test_batch_only_touches_own_emails(client, auth_headers, user, account, make_account, make_email, db):
    from mailassist.model.user import User

    mine = [make_email(account).id for _ in range(2)]
    other_user = User(email="third@example.com", password_hash="x", full_name="x")
    db.add(other_user)
    db.commit()
    foreign = make_email(make_account(other_user.id, email="third@example.com")).id

    response = client.post("/api/email/batch", headers=auth_headers,
                           json={"email_ids": mine + [foreign], "action": "mark_read"})
    assert response.status_code == 200
    assert response.json()["data"] == {"affected_count": 2, "requested_count": 3}

    db.expire_all()
    assert db.get(Email, foreign).is_read is False
    assert all(db.get(Email, i).is_read for i in mine)


def test_batch_set_category_and_delete(client, auth_headers, account, make_email, db):
    ids = [make_email(account).id for _ in range(2)]

    missing_value = client.post("/api/email/batch", headers=auth_headers,
                                json={"email_ids": ids, "action": "set_category"})
    assert missing_value.status_code == 400

    client.post("/api/email/batch", headers=auth_headers,
                json={"email_ids": ids, "action": "set_category", "value": "finance"})
    client.post("/api/email/batch", headers=auth_headers, json={"email_ids": ids[:1], "action": "delete"})

    db.expire_all()
    first, second = db.get(Email, ids[0]), db.get(Email, ids[1])
    assert first.category == second.category == "finance"
    assert first.is_deleted is True
    assert second.is_deleted is False


def test_batch_validation(client, auth_headers):
    empty = client.post("/api/email/batch", headers=auth_headers, json={"email_ids": [], "action": "star"})
    assert empty.status_code == 400
    assert empty.json()["message"] == "email_ids 不能为空"

    too_many = client.post("/api/email/batch", headers=auth_headers,
                           json={"email_ids": list(range(1, 102)), "action": "star"})
    assert too_many.status_code == 400

    unknown = client.post("/api/email/batch", headers=auth_headers, json={"email_ids": [1], "action": "explode"})
    assert unknown.status_code == 400


def test_search_excludes_archived_and_reports_pagination(client, auth_headers, account, make_email):
    make_email(account, subject="Project kickoff", from_name="Dana", has_attachments=True)
    make_email(account, subject="Project archive", is_archived=True)
    make_email(account, subject="Lunch", sentiment="positive",
               received_at=datetime(2024, 4, 1, 12, 0))

    response = client.get("/api/email/search", headers=auth_headers, params={"q": "project"})
    data = response.json()["data"]
    assert [e["subject"] for e in data["emails"]] == ["Project kickoff"]
    assert data["search_query"] == "project"
    assert data["pagination"]["total_count"] == 1
    assert data["pagination"]["has_next"] is False

    by_name = client.get("/api/email/search", headers=auth_headers, params={"q": "dana", "has_attachments": "true"})
    assert by_name.json()["data"]["pagination"]["total_count"] == 1

    dated = client.get("/api/email/search", headers=auth_headers, params={"date_to": "2024-04-30T00:00:00"})
    assert [e["subject"] for e in dated.json()["data"]["emails"]] == ["Lunch"]


def test_export_csv(client, auth_headers, account, make_email):
    make_email(account, subject='Quote "A", urgent', priority_level="high")
    response = client.get("/api/email/export", headers=auth_headers, params={"format": "csv"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment; filename=\"emails-export-" in response.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(response.text)))
    assert rows[0][:3] == ["id", "subject", "from_address"]
    assert rows[1][1] == 'Quote "A", urgent'
    assert rows[1][5] == "high"


def test_export_json_and_bad_format(client, auth_headers, account, make_email):
    make_email(account, category="work")
    make_email(account, category="personal")

    response = client.get("/api/email/export", headers=auth_headers, params={"format": "json", "category": "work"})
    body = response.json()
    assert body["total_count"] == 1
    assert body["filters"]["category"] == "work"
    assert body["emails"][0]["category"] == "work"

    assert client.get("/api/email/export", headers=auth_headers, params={"format": "xml"}).status_code == 400


def test_statistics(client, auth_headers, user, account, make_email, db):
    monday = datetime(2024, 4, 29, 9, 0)
    first = make_email(account, priority_level="high", category="work", sentiment="urgent",
                       received_at=monday, has_attachments=True, action_items=[{"task": "x"}],
                       ai_analyzed_at=monday)
    make_email(account, priority_level="low", category="work", is_read=True, received_at=monday + timedelta(hours=5))
    make_email(account, priority_level="critical", category="personal", received_at=datetime(2024, 5, 1, 9, 0))
    make_email(account, is_deleted=True, priority_level="high", received_at=monday)
    db.add(EmailDraft(user_id=user.id, email_id=first.id, draft_content="ok", status="sent",
                      sent_at=monday + timedelta(hours=2)))
    db.commit()

    data = client.get("/api/email/statistics", headers=auth_headers).json()["data"]

    assert data["overview"]["total_emails"] == 3
    assert data["overview"]["unread_count"] == 2
    assert data["overview"]["read_percentage"] == 33.33
    assert [p["priority"] for p in data["by_priority"]] == ["critical", "high", "low"]
    assert data["by_category"][0] == {"category": "work", "count": 2, "percentage": 66.67}
    assert data["by_sentiment"] == [{"sentiment": "urgent", "count": 1, "percentage": 100.0}]
    assert data["by_hour"] == [{"hour": 9, "count": 2}, {"hour": 14, "count": 1}]
    assert data["by_account"] == [{"email": account.email, "provider": "custom", "count": 3}]
    assert data["ai_analysis"] == {"analyzed_count": 1, "emails_with_actions": 1}
    assert data["insights"]["busiest_day"] == {"day": "Monday", "count": 2}
    assert data["insights"]["avg_response_hours"] == 2.0


def test_category_summary(client, auth_headers, account, make_email, fake_claude, db):
    make_email(account, category="work")
    make_email(account, category="work")
    fake_claude.messages.default = "两封工作邮件。"

    response = client.post("/api/email/category-summary", headers=auth_headers, json={"category": "work"})
    assert response.status_code == 200
    assert response.json()["data"] == {"category": "work", "email_count": 2, "summary": "两封工作邮件。"}
    assert db.query(ApiUsageLog).count() == 1

    empty = client.post("/api/email/category-summary", headers=auth_headers, json={"category": "spam"})
    assert empty.status_code == 404


def test_category_summary_budget_denied(client, auth_headers, user, account, make_email, db, fake_claude):
    make_email(account, category="work")
    budget = get_or_create_budget(db, user.id)
    budget.is_paused = True
    db.commit()

    response = client.post("/api/email/category-summary", headers=auth_headers, json={"category": "work"})
    assert response.status_code == 403
    assert response.json()["message"] == "预算已暂停"
    assert fake_claude.messages.calls == []


def test_patch_with_null_fields_leaves_email_intact(client, auth_headers, account, make_email, db):
    email = make_email(account)

    response = client.patch(f"/api/email/{email.id}", headers=auth_headers, json={"is_read": None})
    assert response.status_code == 400

    partial = client.patch(f"/api/email/{email.id}", headers=auth_headers,
                           json={"is_read": None, "is_starred": True})
    assert partial.status_code == 200
    assert partial.json()["data"]["is_read"] is False

    db.expire_all()
    assert db.get(Email, email.id).is_read is False
    assert client.get("/api/email/list", headers=auth_headers).status_code == 200


def test_search_treats_wildcards_literally(client, auth_headers, account, make_email):
    make_email(account, subject="折扣 50% off")
    make_email(account, subject="普通邮件", body_text="无关内容")
    make_email(account, subject="file_name 附件")

    def subjects(term):
        response = client.get("/api/email/list", headers=auth_headers, params={"search": term})
        return sorted(e["subject"] for e in response.json()["data"]["emails"])

    assert subjects("%") == ["折扣 50% off"]
    assert subjects("_") == ["file_name 附件"]
    searched = client.get("/api/email/search", headers=auth_headers, params={"q": "%"}).json()["data"]
    assert searched["pagination"]["total_count"] == 1
