from datetime import datetime, timedelta
from email import message_from_bytes

import pytest

from mailassist.service import email_sender, gmail_service, outlook_service
from mailassist.service import imap_service
from mailassist.service.imap_service import ImapService
from mailassist.utils.encryption import encrypt


class FakeSMTP:
    instances = []

    def __init__(self, host, port, **kwargs):
        self.host = host
        self.port = port
        self.calls = []
        FakeSMTP.instances.append(self)

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append(("login", username, password))

    def sendmail(self, sender, recipients, message):
        self.calls.append(("sendmail", sender, recipients, message))

    def quit(self):
        self.calls.append("quit")


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(imap_service.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(imap_service.smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


def test_smtp_starttls_on_submission_port(fake_smtp):
    service = ImapService("me@example.com", "pw", "imap.example.com", smtp_host="smtp.example.com", smtp_port=587)
    service.send("you@example.com", "Re: 你好", "正文", in_reply_to="<orig@example.com>")

    smtp = fake_smtp.instances[0]
    assert smtp.calls[0] == "starttls"
    assert smtp.calls[1] == ("login", "me@example.com", "pw")
    sent = smtp.calls[2][3]
    assert "In-Reply-To: <orig@example.com>" in sent
    assert smtp.calls[-1] == "quit"


def test_smtp_implicit_tls_on_465(fake_smtp):
    service = ImapService("me@spacemail.com", "pw", "mail.spacemail.com", smtp_host="mail.spacemail.com", smtp_port=465)
    service.send("you@example.com", "hi", "body")
    assert "starttls" not in fake_smtp.instances[0].calls


def test_build_gmail_message_threads_reply():
    raw = email_sender.build_gmail_message("me@gmail.com", "you@example.com", "Re: hi", "正文", "<orig@x>")
    message = message_from_bytes(raw)
    assert message["In-Reply-To"] == "<orig@x>"
    assert message["References"] == "<orig@x>"
    assert message.get_payload(decode=True).decode("utf-8") == "正文"


def test_send_dispatches_by_provider(db, user, make_account, monkeypatch):
    sent = []
    monkeypatch.setattr(ImapService, "send", lambda self, *args: sent.append(("imap",) + args))
    monkeypatch.setattr(outlook_service, "send_mail", lambda token, *args: sent.append(("outlook", token) + args))
    monkeypatch.setattr(gmail_service, "send_raw_message",
                        lambda token, refresh, raw, thread_id=None: sent.append(("gmail", token, refresh)))

    expires = datetime.utcnow() + timedelta(hours=1)
    imap = make_account(user.id, provider="yahoo", email="me@yahoo.com")
    outlook = make_account(user.id, provider="outlook", email="me@outlook.com",
                           access_token=encrypt("o-token"), token_expires_at=expires)
    gmail = make_account(user.id, provider="gmail", email="me@gmail.com",
                         access_token=encrypt("g-token"), refresh_token=encrypt("g-refresh"), token_expires_at=expires)

    for account in (imap, outlook, gmail):
        email_sender.send_email(db, account.id, "you@example.com", "Re: hi", "body", "<orig@x>")

    assert sent[0] == ("imap", "you@example.com", "Re: hi", "body", "<orig@x>")
    assert sent[1] == ("outlook", "o-token", "you@example.com", "Re: hi", "body", "<orig@x>")
    assert sent[2] == ("gmail", "g-token", "g-refresh")


def test_send_rejects_missing_or_inactive_account(db, user, make_account):
    with pytest.raises(email_sender.SendError, match="邮箱账户不存在"):
        email_sender.send_email(db, 999, "you@example.com", "s", "b")

    inactive = make_account(user.id, is_active=False)
    with pytest.raises(email_sender.SendError, match="邮箱账户未启用"):
        email_sender.send_email(db, inactive.id, "you@example.com", "s", "b")

    unknown = make_account(user.id, provider="aol", email="me@aol.com")
    with pytest.raises(email_sender.SendError, match="不支持的邮箱服务商"):
        email_sender.send_email(db, unknown.id, "you@example.com", "s", "b")
