import os
import tempfile
from datetime import datetime
from types import SimpleNamespace

# 必须在导入应用之前设置
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-0123456789abcdef")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="mailassist-logs-"))

import pytest
from fastapi.testclient import TestClient

from mailassist.database import Base, engine, SessionLocal
from mailassist.main import app, rate_limiter
from mailassist.model.email import Email
from mailassist.model.email_account import EmailAccount
from mailassist.model.user import User
from mailassist.service import llm_service
from mailassist.utils.encryption import encrypt

DEFAULT_PASSWORD = "Password123"

ANALYSIS_JSON = """```json
{
  "priority_score": 85,
  "priority_level": "high",
  "category": "work",
  "sentiment": "urgent",
  "action_items": [{"task": "回复报价", "deadline": null}],
  "summary": "客户询问报价",
  "tags": ["报价"]
}
```"""


class FakeMessages:
    def __init__(self):
        self.default = ANALYSIS_JSON
        self.responses = []
        self.calls = []
        self.error = None

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        text = self.responses.pop(0) if self.responses else self.default
        return SimpleNamespace(
            content=[SimpleNamespace(text=text)],
            usage=SimpleNamespace(input_tokens=1000, output_tokens=200),
        )


class FakeClaude:
    def __init__(self):
        self.messages = FakeMessages()


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture(autouse=True)
def fake_claude(monkeypatch):
    client = FakeClaude()
    monkeypatch.setattr(llm_service, "_client", client)
    return client


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def register(client, email="user@example.com", password=DEFAULT_PASSWORD, full_name="测试用户"):
    response = client.post("/api/auth/register", json={
        "email": email,
        "password": password,
        "full_name": full_name,
    })
    assert response.status_code == 201, response.text
    return response.json()["data"]["token"]


@pytest.fixture
def token(client):
    return register(client)


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user(db, token):
    return db.query(User).filter(User.email == "user@example.com").first()


@pytest.fixture
def other_headers(client):
    return {"Authorization": f"Bearer {register(client, email='other@example.com')}"}


@pytest.fixture
def make_account(db):
    def _make(user_id, provider="custom", email="inbox@example.com", **fields):
        values = {
            "imap_host": "imap.example.com",
            "imap_port": 993,
            "smtp_host": "smtp.example.com",
            "smtp_port": 587,
            "username": email,
            "password_encrypted": encrypt("mail-password"),
        }
        values.update(fields)
        account = EmailAccount(user_id=user_id, provider=provider, email=email, **values)
        db.add(account)
        db.commit()
        db.refresh(account)
        return account
    return _make


@pytest.fixture
def account(user, make_account):
    return make_account(user.id)


@pytest.fixture
def make_email(db):
    counter = {"n": 0}

    def _make(account, **fields):
        counter["n"] += 1
        values = {
            "message_id": f"<msg-{counter['n']}@example.com>",
            "subject": f"邮件 {counter['n']}",
            "from_address": "sender@example.com",
            "from_name": "发件人",
            "to_addresses": [{"email": account.email, "name": ""}],
            "body_text": "正文内容",
            "snippet": "正文内容",
            "received_at": datetime(2024, 5, 1, 9, 0, counter["n"] % 60),
        }
        values.update(fields)
        record = Email(email_account_id=account.id, user_id=account.user_id, **values)
        db.add(record)
        db.commit()
        db.refresh(record)
        return record
    return _make
