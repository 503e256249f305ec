from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional

from mailassist.database import get_db
from mailassist.model.user import User
from mailassist.model.email import Email
from mailassist.model.draft import EmailDraft
from mailassist.controller.auth import get_current_user
from mailassist.schemas.draft import DraftCreate, DraftUpdate, DraftResponse
from mailassist.service import llm_service, email_sender
from mailassist.service.budget_service import BudgetExceededError
from mailassist.utils.response import success, bad_request, forbidden, not_found, server_error
from mailassist.utils.logger import get_logger

logger = get_logger("drafts")

router = APIRouter()


def _serialize(draft: EmailDraft) -> dict:
    data = DraftResponse.model_validate(draft).model_dump()
    data["email_subject"] = draft.email.subject if draft.email else None
    data["email_from"] = draft.email.from_address if draft.email else None
    data["email_from_name"] = draft.email.from_name if draft.email else None
    return data


def _get_owned_draft(db: Session, draft_id: int, user_id: int) -> Optional[EmailDraft]:
    return db.query(EmailDraft).filter(
        EmailDraft.id == draft_id,
        EmailDraft.user_id == user_id
    ).first()


@router.get("")
async def get_drafts(
    status: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    获取草稿列表，附带原邮件主题和发件人
    """
    query = db.query(EmailDraft).filter(EmailDraft.user_id == current_user.id)
    if status:
        query = query.filter(EmailDraft.status == status)
    drafts = query.order_by(EmailDraft.created_at.desc(), EmailDraft.id.desc()).all()
    return success([_serialize(d) for d in drafts])


@router.post("/create")
async def create_draft(
    payload: DraftCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    为邮件创建回复草稿
    skip_ai 且提供了 draft_content 时直接保存手写内容，否则调用AI生成
    """
    if payload.email_id is None:
        return bad_request("email_id 为必填项")

    email = db.query(Email).filter(
        Email.id == payload.email_id,
        Email.user_id == current_user.id,
        Email.is_deleted == False
    ).first()
    if not email:
        return not_found("邮件不存在")

    if payload.skip_ai and payload.draft_content:
        draft = EmailDraft(
            user_id=current_user.id,
            email_id=email.id,
            draft_content=payload.draft_content,
            tone=payload.tone,
            status="pending",
        )
    else:
        try:
            generated = llm_service.generate_draft_reply(
                db, current_user.id, email, payload.tone or "professional", payload.instructions or ""
            )
        except BudgetExceededError as e:
            return forbidden(str(e))
        except Exception as e:
            logger.error(f"生成草稿失败: {e}", exc_info=True)
            return server_error(f"生成草稿失败: {e}")

        draft = EmailDraft(
            user_id=current_user.id,
            email_id=email.id,
            subject=generated.get("subject"),
            draft_content=generated.get("body_text") or "",
            body_html=generated.get("body_html"),
            tone=payload.tone,
            confidence_score=generated.get("confidence_score"),
            context=generated.get("notes"),
            status="pending",
        )

    try:
        db.add(draft)
        db.commit()
        db.refresh(draft)
        return success(_serialize(draft), msg="草稿已创建", status_code=201)
    except Exception as e:
        db.rollback()
        logger.error(f"保存草稿失败: {e}", exc_info=True)
        return server_error("保存草稿失败")


@router.get("/{draft_id}")
async def get_draft(draft_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    draft = _get_owned_draft(db, draft_id, current_user.id)
    if not draft:
        return not_found("草稿不存在")
    return success(_serialize(draft))


@router.patch("/{draft_id}")
async def update_draft(
    draft_id: int,
    payload: DraftUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    draft = _get_owned_draft(db, draft_id, current_user.id)
    if not draft:
        return not_found("草稿不存在")

    update_data = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update_data:
        return bad_request("没有需要更新的字段")

    for key, value in update_data.items():
        setattr(draft, key, value)
    db.commit()
    db.refresh(draft)
    return success(_serialize(draft), msg="草稿已更新")


@router.delete("/{draft_id}")
async def delete_draft(draft_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    draft = _get_owned_draft(db, draft_id, current_user.id)
    if not draft:
        return not_found("草稿不存在")

    db.delete(draft)
    db.commit()
    return success(msg="草稿已删除")


@router.post("/{draft_id}/send")
async def send_draft(draft_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    发送草稿：回复原邮件发件人，失败时草稿标记为 failed
    """
    draft = _get_owned_draft(db, draft_id, current_user.id)
    if not draft:
        return not_found("草稿不存在")
    if draft.status == "sent":
        return bad_request("草稿已发送")

    email = draft.email
    if not email:
        return not_found("原邮件不存在")

    subject = draft.subject or f"Re: {email.subject}"
    try:
        email_sender.send_email(
            db,
            email.email_account_id,
            to=email.from_address,
            subject=subject,
            body=draft.draft_content,
            in_reply_to=email.message_id,
        )
    except Exception as e:
        db.rollback()
        logger.error(f"发送草稿 {draft_id} 失败: {e}", exc_info=True)
        draft = _get_owned_draft(db, draft_id, current_user.id)
        draft.status = "failed"
        draft.error_message = str(e)
        db.commit()
        return server_error(f"发送失败: {e}")

    draft.status = "sent"
    draft.sent_at = datetime.utcnow()
    draft.error_message = None
    db.commit()
    db.refresh(draft)
    logger.info(f"草稿 {draft_id} 已发送至 {email.from_address}")
    return success(_serialize(draft), msg="邮件已发送")
