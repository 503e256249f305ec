import json
import os
from datetime import datetime
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, BackgroundTasks
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from mailassist.database import get_db
from mailassist.model.user import User
from mailassist.model.email_account import EmailAccount
from mailassist.schemas.account import ImapConnectRequest, OutlookCodeRequest, AccountUpdate, SyncRequest, AccountResponse
from mailassist.controller.auth import get_current_user
from mailassist.service import gmail_service, outlook_service, email_sync
from mailassist.service.imap_service import ImapService, ImapConnectionError, PROVIDER_PRESETS
from mailassist.utils.encryption import encrypt
from mailassist.utils.response import success, bad_request, not_found, server_error
from mailassist.utils.logger import get_logger

logger = get_logger("email_accounts")

router = APIRouter()

APP_URL = os.getenv("APP_URL", "*")


def _settings_redirect(**params) -> RedirectResponse:
    base = "" if APP_URL == "*" else APP_URL.rstrip("/")
    return RedirectResponse(url=f"{base}/settings?{urlencode(params)}", status_code=302)


def _get_owned_account(db: Session, account_id: int, user_id: int):
    return db.query(EmailAccount).filter(
        EmailAccount.id == account_id,
        EmailAccount.user_id == user_id
    ).first()


def upsert_account(db: Session, user_id: int, provider: str, email_address: str, **fields) -> EmailAccount:
    """按 (user_id, email) 新建或更新账户，并重置连接状态（调用方负责提交）"""
    account = db.query(EmailAccount).filter(
        EmailAccount.user_id == user_id,
        EmailAccount.email == email_address
    ).first()
    if not account:
        account = EmailAccount(user_id=user_id, email=email_address, sync_enabled=True)
        db.add(account)

    account.provider = provider
    for key, value in fields.items():
        setattr(account, key, value)
    account.connection_status = "connected"
    account.error_message = None
    account.is_active = True
    db.flush()
    return account


def _save_oauth_account(db: Session, user_id: int, provider: str, email_address: str,
                        tokens: dict, display_name: str = None) -> EmailAccount:
    fields = {
        "access_token": encrypt(tokens["access_token"]),
        "token_expires_at": tokens.get("expires_at"),
    }
    if tokens.get("refresh_token"):
        fields["refresh_token"] = encrypt(tokens["refresh_token"])
    if display_name:
        fields["display_name"] = display_name
    account = upsert_account(db, user_id, provider, email_address, **fields)
    db.commit()
    db.refresh(account)
    return account


def _parse_state(state: str) -> dict:
    try:
        data = json.loads(state)
    except (TypeError, ValueError):
        return {}
    if not isinstance(data, dict) or not isinstance(data.get("userId"), int):
        return {}
    return data


@router.get("/accounts")
async def list_accounts(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    accounts = db.query(EmailAccount).filter(
        EmailAccount.user_id == current_user.id
    ).order_by(EmailAccount.created_at.desc(), EmailAccount.id.desc()).all()
    return success([AccountResponse.model_validate(a) for a in accounts])


@router.patch("/accounts/{account_id}")
async def update_account(
    account_id: int,
    payload: AccountUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    account = _get_owned_account(db, account_id, current_user.id)
    if not account:
        return not_found("邮箱账户不存在")

    update_data = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update_data:
        return bad_request("没有需要更新的字段")

    try:
        for key, value in update_data.items():
            setattr(account, key, value)
        db.commit()
        db.refresh(account)
        return success(AccountResponse.model_validate(account), msg="邮箱账户已更新")
    except Exception as e:
        db.rollback()
        logger.error(f"更新邮箱账户失败: {e}", exc_info=True)
        return server_error("更新邮箱账户失败")


@router.delete("/accounts/{account_id}")
async def delete_account(account_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    account = _get_owned_account(db, account_id, current_user.id)
    if not account:
        return not_found("邮箱账户不存在")

    account.is_active = False
    db.commit()
    logger.info(f"用户 {current_user.id} 停用邮箱账户 {account.email}")
    return success(msg="邮箱账户已删除")


@router.post("/connect/imap")
async def connect_imap(
    payload: ImapConnectRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    if payload.provider == "custom":
        if not payload.imap_host or not payload.smtp_host:
            return bad_request("自定义服务商必须提供 IMAP 和 SMTP 服务器地址")
        settings = {
            "imap_host": payload.imap_host,
            "imap_port": payload.imap_port or 993,
            "smtp_host": payload.smtp_host,
            "smtp_port": payload.smtp_port or 587,
        }
    elif payload.provider in PROVIDER_PRESETS:
        preset = PROVIDER_PRESETS[payload.provider]
        settings = {
            "imap_host": payload.imap_host or preset["imap_host"],
            "imap_port": payload.imap_port or preset["imap_port"],
            "smtp_host": payload.smtp_host or preset["smtp_host"],
            "smtp_port": payload.smtp_port or preset["smtp_port"],
        }
    else:
        return bad_request(f"不支持的邮箱服务商: {payload.provider}")

    try:
        ImapService(payload.email_address, payload.password, **settings).test_connection()
    except ImapConnectionError as e:
        return bad_request(str(e))

    try:
        account = upsert_account(
            db, current_user.id, payload.provider, payload.email_address,
            username=payload.email_address,
            password_encrypted=encrypt(payload.password),
            **settings,
        )
        db.commit()
        db.refresh(account)
        logger.info(f"用户 {current_user.id} 连接IMAP邮箱 {account.email}")
        return success(AccountResponse.model_validate(account), msg="邮箱连接成功")
    except Exception as e:
        db.rollback()
        logger.error(f"保存IMAP账户失败: {e}", exc_info=True)
        return server_error("保存邮箱账户失败")


@router.get("/connect/gmail")
async def connect_gmail(current_user: User = Depends(get_current_user)):
    try:
        return success({"authUrl": gmail_service.get_auth_url(current_user.id)}, msg="已生成授权链接")
    except Exception as e:
        logger.error(f"生成Gmail授权链接失败: {e}", exc_info=True)
        return server_error("生成授权链接失败")


@router.get("/connect/gmail-callback")
async def gmail_callback(code: str = None, state: str = None, error: str = None, db: Session = Depends(get_db)):
    if error:
        logger.info(f"Gmail授权被拒绝: {error}")
        return _settings_redirect(error="授权被拒绝")
    if not code:
        return _settings_redirect(error="missing_code")

    state_data = _parse_state(state)
    if not state_data or not db.query(User).filter(User.id == state_data["userId"]).first():
        return _settings_redirect(error="invalid_state")

    try:
        tokens = gmail_service.exchange_code(code)
        email_address = gmail_service.get_profile_email(tokens["access_token"])
        _save_oauth_account(db, state_data["userId"], "gmail", email_address, tokens)
        logger.info(f"用户 {state_data['userId']} 连接Gmail {email_address}")
        return _settings_redirect(success="gmail_connected")
    except Exception as e:
        db.rollback()
        logger.error(f"Gmail授权回调失败: {e}", exc_info=True)
        return _settings_redirect(error=str(e))


@router.get("/connect/outlook")
async def connect_outlook(current_user: User = Depends(get_current_user)):
    try:
        return success({"authUrl": outlook_service.get_auth_url(current_user.id)}, msg="已生成授权链接")
    except Exception as e:
        logger.error(f"生成Outlook授权链接失败: {e}", exc_info=True)
        return server_error("生成授权链接失败")


@router.post("/connect/outlook")
async def connect_outlook_code(
    payload: OutlookCodeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    if not payload.code:
        return bad_request("缺少授权码")

    try:
        tokens = outlook_service.exchange_code(payload.code, payload.code_verifier)
    except Exception as e:
        logger.error(f"Outlook授权码换取令牌失败: {e}", exc_info=True)
        return server_error("授权码换取令牌失败")

    try:
        profile = outlook_service.get_profile(tokens["access_token"])
    except Exception as e:
        logger.error(f"获取Outlook用户信息失败: {e}", exc_info=True)
        return server_error("获取用户信息失败")

    try:
        account = _save_oauth_account(db, current_user.id, "outlook", profile["email"], tokens, profile.get("display_name"))
        return success(AccountResponse.model_validate(account), msg="Outlook 连接成功")
    except Exception as e:
        db.rollback()
        logger.error(f"保存Outlook账户失败: {e}", exc_info=True)
        return server_error("保存邮箱账户失败")


@router.get("/connect/outlook-callback")
async def outlook_callback(code: str = None, state: str = None, error: str = None, db: Session = Depends(get_db)):
    if error:
        logger.info(f"Outlook授权被拒绝: {error}")
        return _settings_redirect(error="授权被拒绝")
    if not code:
        return _settings_redirect(error="missing_code")

    state_data = _parse_state(state)
    if not state_data or not db.query(User).filter(User.id == state_data["userId"]).first():
        return _settings_redirect(error="invalid_state")

    try:
        tokens = outlook_service.exchange_code(code, state_data.get("codeVerifier"))
        profile = outlook_service.get_profile(tokens["access_token"])
        _save_oauth_account(db, state_data["userId"], "outlook", profile["email"], tokens, profile.get("display_name"))
        logger.info(f"用户 {state_data['userId']} 连接Outlook {profile['email']}")
        return _settings_redirect(success="outlook_connected")
    except Exception as e:
        db.rollback()
        logger.error(f"Outlook授权回调失败: {e}", exc_info=True)
        return _settings_redirect(error=str(e))


@router.post("/sync")
async def sync_accounts(
    background_tasks: BackgroundTasks,
    payload: SyncRequest = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    account_id = payload.account_id if payload else None

    if account_id is not None:
        account = _get_owned_account(db, account_id, current_user.id)
        if not account:
            return not_found("邮箱账户不存在")
        try:
            result = email_sync.sync_email_account(db, account_id)
        except Exception as e:
            return server_error(f"同步失败: {e}")
        background_tasks.add_task(email_sync.analyze_stored_emails, current_user.id, result["email_ids"])
        return success({"success": True, "count": result["count"]}, msg=f"同步完成，新邮件 {result['count']} 封")

    results = email_sync.sync_user_accounts(db, current_user.id)
    new_ids = [i for r in results if r["success"] for i in r.pop("email_ids")]
    background_tasks.add_task(email_sync.analyze_stored_emails, current_user.id, new_ids)
    return success({
        "results": results,
        "total": sum(r.get("count", 0) for r in results),
        "synced_at": datetime.utcnow(),
    }, msg="同步完成")
