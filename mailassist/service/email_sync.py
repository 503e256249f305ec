"""
邮件同步：按服务商拉取邮件，去重入库，新邮件交给后台任务做AI分析
"""
import os
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from mailassist.database import SessionLocal
from mailassist.model.email import Email
from mailassist.model.email_account import EmailAccount
from mailassist.model.notification import Notification
from mailassist.model.user import User
from mailassist.service import gmail_service, outlook_service, llm_service
from mailassist.service.budget_service import BudgetExceededError
from mailassist.service.imap_service import ImapService, IMAP_PROVIDERS
from mailassist.utils.encryption import encrypt, decrypt
from mailassist.utils.logger import get_logger

logger = get_logger("email_sync")

MAX_EMAILS_PER_SYNC = int(os.getenv("MAX_EMAILS_PER_SYNC", "100"))
DEFAULT_SYNC_DAYS = 7

TOKEN_PROVIDERS = {
    "gmail": gmail_service,
    "outlook": outlook_service,
}

STORED_FIELDS = (
    "message_id", "thread_id", "subject", "from_address", "from_name", "to_addresses",
    "cc_addresses", "body_text", "body_html", "snippet", "received_at", "is_read",
    "is_starred", "labels", "has_attachments", "attachments",
)


class SyncError(Exception):
    pass


def get_access_token(db: Session, account: EmailAccount) -> str:
    """返回可用的访问令牌，已过期时先刷新并保存"""
    if not account.access_token:
        raise SyncError("账户缺少访问令牌，请重新授权")

    if account.token_expires_at and account.token_expires_at < datetime.utcnow():
        if not account.refresh_token:
            raise SyncError("访问令牌已过期且没有刷新令牌，请重新授权")
        logger.info(f"{account.provider} 令牌已过期，正在刷新: {account.email}")
        tokens = TOKEN_PROVIDERS[account.provider].refresh_access_token(decrypt(account.refresh_token))
        account.access_token = encrypt(tokens["access_token"])
        if tokens.get("refresh_token"):
            account.refresh_token = encrypt(tokens["refresh_token"])
        account.token_expires_at = tokens["expires_at"]
        db.commit()
        return tokens["access_token"]

    return decrypt(account.access_token)


def _sync_window(account: EmailAccount) -> datetime:
    return account.sync_from_date or (datetime.utcnow() - timedelta(days=DEFAULT_SYNC_DAYS))


def fetch_account_messages(db: Session, account: EmailAccount) -> list:
    since = _sync_window(account)

    if account.provider == "gmail":
        access_token = get_access_token(db, account)
        refresh_token = decrypt(account.refresh_token) if account.refresh_token else None
        return gmail_service.fetch_messages(access_token, refresh_token, since, MAX_EMAILS_PER_SYNC)

    if account.provider == "outlook":
        access_token = get_access_token(db, account)
        return outlook_service.fetch_messages(access_token, since, MAX_EMAILS_PER_SYNC)

    if account.provider in IMAP_PROVIDERS:
        return ImapService.from_account(account).fetch_since(since, MAX_EMAILS_PER_SYNC)

    raise SyncError(f"不支持的邮箱服务商: {account.provider}")


def store_email(db: Session, account: EmailAccount, email_data: dict) -> Optional[Email]:
    """同一账户下 message_id 已存在时跳过，返回新建的邮件或 None"""
    exists = db.query(Email.id).filter(
        Email.email_account_id == account.id,
        Email.message_id == email_data["message_id"]
    ).first()
    if exists:
        return None

    record = Email(
        email_account_id=account.id,
        user_id=account.user_id,
        **{field: email_data.get(field) for field in STORED_FIELDS},
    )
    record.subject = record.subject or "(无主题)"
    record.to_addresses = record.to_addresses or []
    record.cc_addresses = record.cc_addresses or []
    record.labels = record.labels or []
    record.attachments = record.attachments or []
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def sync_email_account(db: Session, account_id: int) -> dict:
    account = db.query(EmailAccount).filter(
        EmailAccount.id == account_id,
        EmailAccount.is_active == True
    ).first()
    if not account:
        raise SyncError("账户不存在")

    logger.info(f"开始同步 {account.email} ({account.provider})")
    try:
        messages = fetch_account_messages(db, account)

        stored_ids = []
        for email_data in messages:
            try:
                stored = store_email(db, account, email_data)
                if stored:
                    stored_ids.append(stored.id)
            except Exception as e:
                db.rollback()
                logger.error(f"保存邮件 {email_data.get('message_id')} 失败: {e}", exc_info=True)

        account.last_sync_at = datetime.utcnow()
        account.connection_status = "connected"
        account.error_message = None
        db.commit()

        logger.info(f"{account.email} 同步完成，新邮件 {len(stored_ids)} 封")
        return {"success": True, "count": len(stored_ids), "email_ids": stored_ids}
    except Exception as e:
        db.rollback()
        logger.error(f"账户 {account_id} 同步失败: {e}", exc_info=True)
        account = db.query(EmailAccount).filter(EmailAccount.id == account_id).first()
        if account:
            account.connection_status = "error"
            account.error_message = str(e)
            db.commit()
        raise


def sync_user_accounts(db: Session, user_id: int) -> list:
    """依次同步用户所有启用的账户，单个失败不影响其余账户"""
    accounts = db.query(EmailAccount).filter(
        EmailAccount.user_id == user_id,
        EmailAccount.is_active == True,
        EmailAccount.sync_enabled == True
    ).order_by(EmailAccount.id).all()
    account_ids = [account.id for account in accounts]

    results = []
    for account_id in account_ids:
        try:
            result = sync_email_account(db, account_id)
            results.append({
                "accountId": account_id,
                "success": True,
                "count": result["count"],
                "email_ids": result["email_ids"],
            })
        except Exception as e:
            results.append({"accountId": account_id, "success": False, "error": str(e)})
    return results


def apply_analysis(email: Email, analysis: dict):
    email.priority_score = analysis.get("priority_score")
    email.priority_level = analysis.get("priority_level")
    email.category = analysis.get("category")
    email.sentiment = analysis.get("sentiment")
    email.action_items = analysis.get("action_items") or []
    email.summary = analysis.get("summary")
    email.tags = analysis.get("tags") or []
    email.ai_analyzed_at = datetime.utcnow()


def analyze_stored_emails(user_id: int, email_ids: list):
    """
    后台任务：分析新入库的邮件，重要邮件生成通知
    使用独立的数据库会话，失败只记录日志
    """
    if not email_ids:
        return

    db: Session = SessionLocal()
    try:
        user = db.query(User).filter(User.id == user_id).first()
        if not user or (user.settings or {}).get("autoAnalyze") is False:
            return

        for email_id in email_ids:
            record = db.query(Email).filter(Email.id == email_id, Email.user_id == user_id).first()
            if not record:
                continue
            try:
                analysis = llm_service.analyze_email(db, user_id, record)
                apply_analysis(record, analysis)

                level = record.priority_level
                if level in ("critical", "high"):
                    db.add(Notification(
                        user_id=user_id,
                        email_id=record.id,
                        type="important_email",
                        title=f"{level.upper()}: {record.subject}",
                        message=f"From: {record.from_name or record.from_address}\n{record.summary or ''}",
                    ))
                db.commit()
            except BudgetExceededError as e:
                logger.info(f"用户 {user_id} 预算不足，停止自动分析: {e}")
                break
            except Exception as e:
                db.rollback()
                logger.error(f"自动分析邮件 {email_id} 失败: {e}", exc_info=True)
    finally:
        db.close()
