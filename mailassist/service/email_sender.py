from email.mime.text import MIMEText
from typing import Optional

from sqlalchemy.orm import Session

from mailassist.model.email_account import EmailAccount
from mailassist.service import gmail_service, outlook_service
from mailassist.service.email_sync import get_access_token
from mailassist.service.imap_service import ImapService, IMAP_PROVIDERS
from mailassist.utils.encryption import decrypt
from mailassist.utils.logger import get_logger

logger = get_logger("email_sender")


class SendError(Exception):
    pass


def build_gmail_message(sender: str, to: str, subject: str, body: str, in_reply_to: Optional[str] = None) -> bytes:
    message = MIMEText(body, "plain", "utf-8")
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    if in_reply_to:
        message["In-Reply-To"] = in_reply_to
        message["References"] = in_reply_to
    return message.as_bytes()


def send_email(db: Session, account_id: int, to: str, subject: str, body: str, in_reply_to: Optional[str] = None):
    """根据账户服务商选择发送通道"""
    account = db.query(EmailAccount).filter(EmailAccount.id == account_id).first()
    if not account:
        raise SendError("邮箱账户不存在")
    if not account.is_active:
        raise SendError("邮箱账户未启用")

    if account.provider == "gmail":
        access_token = get_access_token(db, account)
        refresh_token = decrypt(account.refresh_token) if account.refresh_token else None
        raw = build_gmail_message(account.email, to, subject, body, in_reply_to)
        gmail_service.send_raw_message(access_token, refresh_token, raw)
    elif account.provider == "outlook":
        access_token = get_access_token(db, account)
        outlook_service.send_mail(access_token, to, subject, body, in_reply_to)
    elif account.provider in IMAP_PROVIDERS:
        ImapService.from_account(account).send(to, subject, body, in_reply_to)
    else:
        raise SendError(f"不支持的邮箱服务商: {account.provider}")

    logger.info(f"邮件已发送: {account.email} -> {to}, 主题: {subject}")
