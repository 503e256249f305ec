import csv
import io
import math
from collections import Counter
from datetime import datetime, date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response, JSONResponse
from fastapi.encoders import jsonable_encoder
from sqlalchemy import or_, func
from sqlalchemy.orm import Session

from mailassist.database import get_db
from mailassist.model.user import User
from mailassist.model.email_account import EmailAccount
from mailassist.model.email import Email
from mailassist.model.draft import EmailDraft
from mailassist.controller.auth import get_current_user
from mailassist.schemas.email import EmailResponse, EmailUpdate, BatchRequest, CategorySummaryRequest
from mailassist.service import llm_service
from mailassist.service.budget_service import BudgetExceededError
from mailassist.utils.response import success, bad_request, forbidden, not_found, server_error
from mailassist.utils.logger import get_logger

# 初始化日志
logger = get_logger("emails")

router = APIRouter()

PRIORITY_ORDER = {"critical": 1, "high": 2, "medium": 3, "low": 4}
EXPORT_FIELDS = [
    "id", "subject", "from_address", "from_name", "received_at", "priority_level",
    "category", "sentiment", "is_read", "is_starred", "has_attachments", "summary",
]
WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _clamp_limit(limit: int, maximum: int = 100) -> int:
    return max(1, min(limit, maximum))


def _serialize(email: Email, account: EmailAccount = None) -> dict:
    data = EmailResponse.model_validate(email).model_dump()
    account = account or email.account
    data["account_email"] = account.email if account else None
    data["provider"] = account.provider if account else None
    return data


def _get_owned_email(db: Session, email_id: int, user_id: int) -> Optional[Email]:
    return db.query(Email).filter(
        Email.id == email_id,
        Email.user_id == user_id,
        Email.is_deleted == False
    ).first()


def _text_match(keyword: str, *columns):
    # 用户输入中的 % 和 _ 按字面匹配
    escaped = keyword.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    return or_(*[func.lower(column).like(pattern, escape="\\") for column in columns])


def _percentage(count: int, total: int) -> float:
    return round(count * 100.0 / total, 2) if total else 0


@router.get("/list")
async def list_emails(
    page: int = Query(default=1),
    limit: int = Query(default=50),
    priority: Optional[str] = None,
    category: Optional[str] = None,
    is_read: Optional[bool] = None,
    is_starred: Optional[bool] = None,
    search: Optional[str] = None,
    account_id: Optional[int] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    获取邮件列表（按接收时间倒序分页）
    """
    page = max(page, 1)
    limit = _clamp_limit(limit)

    query = db.query(Email, EmailAccount).join(EmailAccount, Email.email_account_id == EmailAccount.id).filter(
        Email.user_id == current_user.id,
        Email.is_deleted == False
    )
    if priority:
        query = query.filter(Email.priority_level == priority)
    if category:
        query = query.filter(Email.category == category)
    if is_read is not None:
        query = query.filter(Email.is_read == is_read)
    if is_starred is not None:
        query = query.filter(Email.is_starred == is_starred)
    if account_id is not None:
        query = query.filter(Email.email_account_id == account_id)
    if search:
        query = query.filter(_text_match(search, Email.subject, Email.from_address, Email.body_text))

    total = query.count()
    rows = query.order_by(Email.received_at.desc(), Email.id.desc()).offset((page - 1) * limit).limit(limit).all()

    return success({
        "emails": [_serialize(e, a) for e, a in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit),
        },
    })


@router.post("/batch")
async def batch_update(
    payload: BatchRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """批量操作，只影响当前用户自己的邮件"""
    updates = {
        "mark_read": {"is_read": True},
        "mark_unread": {"is_read": False},
        "star": {"is_starred": True},
        "unstar": {"is_starred": False},
        "archive": {"is_archived": True},
        "unarchive": {"is_archived": False},
        "set_category": {"category": payload.value},
        "set_priority": {"priority_level": payload.value},
        "delete": {"is_deleted": True},
    }[payload.action]

    if payload.action in ("set_category", "set_priority") and not payload.value:
        return bad_request(f"{payload.action} 操作需要提供 value")

    try:
        affected = db.query(Email).filter(
            Email.id.in_(payload.email_ids),
            Email.user_id == current_user.id,
            Email.is_deleted == False
        ).update(updates, synchronize_session=False)
        db.commit()
        logger.info(f"用户 {current_user.id} 批量 {payload.action}: {affected}/{len(payload.email_ids)}")
        return success({
            "affected_count": affected,
            "requested_count": len(payload.email_ids),
        }, msg=f"已处理 {affected} 封邮件")
    except Exception as e:
        db.rollback()
        logger.error(f"批量操作失败: {e}", exc_info=True)
        return server_error("批量操作失败")


@router.get("/search")
async def search_emails(
    q: Optional[str] = None,
    priority: Optional[str] = None,
    category: Optional[str] = None,
    sentiment: Optional[str] = None,
    is_read: Optional[bool] = None,
    is_starred: Optional[bool] = None,
    has_attachments: Optional[bool] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(default=1),
    limit: int = Query(default=50),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    page = max(page, 1)
    limit = _clamp_limit(limit)

    query = db.query(Email, EmailAccount).join(EmailAccount, Email.email_account_id == EmailAccount.id).filter(
        Email.user_id == current_user.id,
        Email.is_deleted == False,
        Email.is_archived == False
    )
    if q:
        query = query.filter(_text_match(
            q, Email.subject, Email.from_address, Email.from_name, Email.body_text, Email.snippet
        ))
    if priority:
        query = query.filter(Email.priority_level == priority)
    if category:
        query = query.filter(Email.category == category)
    if sentiment:
        query = query.filter(Email.sentiment == sentiment)
    if is_read is not None:
        query = query.filter(Email.is_read == is_read)
    if is_starred is not None:
        query = query.filter(Email.is_starred == is_starred)
    if has_attachments is not None:
        query = query.filter(Email.has_attachments == has_attachments)
    if date_from:
        query = query.filter(Email.received_at >= date_from)
    if date_to:
        query = query.filter(Email.received_at <= date_to)

    total = query.count()
    total_pages = math.ceil(total / limit)
    rows = query.order_by(Email.received_at.desc(), Email.id.desc()).offset((page - 1) * limit).limit(limit).all()

    return success({
        "emails": [_serialize(e, a) for e, a in rows],
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_count": total,
            "per_page": limit,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
        "search_query": q,
        "filters": {
            "priority": priority,
            "category": category,
            "sentiment": sentiment,
            "is_read": is_read,
            "is_starred": is_starred,
            "has_attachments": has_attachments,
            "date_from": date_from,
            "date_to": date_to,
        },
    })


@router.get("/export")
async def export_emails(
    format: str = Query(default="json"),
    priority: Optional[str] = None,
    category: Optional[str] = None,
    is_read: Optional[bool] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(default=1000),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """导出邮件为 CSV 或 JSON 附件"""
    export_format = format.lower()
    if export_format not in ("json", "csv"):
        return bad_request("导出格式仅支持 json 或 csv")

    limit = _clamp_limit(limit, 10000)
    query = db.query(Email).filter(Email.user_id == current_user.id, Email.is_deleted == False)
    if priority:
        query = query.filter(Email.priority_level == priority)
    if category:
        query = query.filter(Email.category == category)
    if is_read is not None:
        query = query.filter(Email.is_read == is_read)
    if date_from:
        query = query.filter(Email.received_at >= date_from)
    if date_to:
        query = query.filter(Email.received_at <= date_to)
    emails = query.order_by(Email.received_at.desc()).limit(limit).all()

    filename = f"emails-export-{date.today().isoformat()}.{export_format}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    logger.info(f"用户 {current_user.id} 导出 {len(emails)} 封邮件 ({export_format})")

    if export_format == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL)
        writer.writerow(EXPORT_FIELDS)
        for e in emails:
            writer.writerow(["" if getattr(e, f) is None else getattr(e, f) for f in EXPORT_FIELDS])
        return Response(content=buffer.getvalue(), media_type="text/csv; charset=utf-8", headers=headers)

    return JSONResponse(
        content=jsonable_encoder({
            "exported_at": datetime.utcnow(),
            "total_count": len(emails),
            "filters": {
                "priority": priority,
                "category": category,
                "is_read": is_read,
                "date_from": date_from,
                "date_to": date_to,
            },
            "emails": [EmailResponse.model_validate(e) for e in emails],
        }),
        headers=headers,
    )


@router.get("/statistics")
async def email_statistics(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        emails = db.query(Email).filter(Email.user_id == current_user.id, Email.is_deleted == False).all()
        total = len(emails)
        unread = sum(1 for e in emails if not e.is_read)
        with_attachments = sum(1 for e in emails if e.has_attachments)

        def distribution(attr: str, order=None):
            counts = Counter(getattr(e, attr) for e in emails if getattr(e, attr))
            subtotal = sum(counts.values())
            keys = sorted(counts, key=order) if order else [k for k, _ in counts.most_common()]
            return [{attr: k, "count": counts[k], "percentage": _percentage(counts[k], subtotal)} for k in keys]

        by_priority = [
            {"priority": item["priority_level"], "count": item["count"], "percentage": item["percentage"]}
            for item in distribution("priority_level", order=lambda k: PRIORITY_ORDER.get(k, 99))
        ]

        hours = Counter(e.received_at.hour for e in emails if e.received_at)
        days = Counter(e.received_at.weekday() for e in emails if e.received_at)
        busiest = days.most_common(1)

        accounts = db.query(EmailAccount).filter(EmailAccount.user_id == current_user.id).all()
        per_account = Counter(e.email_account_id for e in emails)
        by_account = sorted(
            [{"email": a.email, "provider": a.provider, "count": per_account.get(a.id, 0)} for a in accounts],
            key=lambda item: item["count"], reverse=True,
        )

        sent = db.query(EmailDraft.sent_at, Email.received_at).join(Email, EmailDraft.email_id == Email.id).filter(
            EmailDraft.user_id == current_user.id,
            EmailDraft.status == "sent",
            EmailDraft.sent_at.isnot(None)
        ).all()
        response_hours = [(s - r).total_seconds() / 3600 for s, r in sent if r]

        return success({
            "overview": {
                "total_emails": total,
                "unread_count": unread,
                "starred_count": sum(1 for e in emails if e.is_starred),
                "archived_count": sum(1 for e in emails if e.is_archived),
                "with_attachments_count": with_attachments,
                "read_percentage": _percentage(total - unread, total),
            },
            "by_priority": by_priority,
            "by_category": distribution("category"),
            "by_sentiment": distribution("sentiment"),
            "by_hour": [{"hour": h, "count": hours[h]} for h in sorted(hours)],
            "by_account": by_account,
            "ai_analysis": {
                "analyzed_count": sum(1 for e in emails if e.ai_analyzed_at),
                "emails_with_actions": sum(1 for e in emails if e.action_items),
            },
            "insights": {
                "busiest_day": {"day": WEEKDAYS[busiest[0][0]], "count": busiest[0][1]} if busiest else None,
                "avg_response_hours": round(sum(response_hours) / len(response_hours), 2) if response_hours else None,
                "attachment_percentage": _percentage(with_attachments, total),
            },
        })
    except Exception as e:
        logger.error(f"获取邮件统计失败: {e}", exc_info=True)
        return server_error("获取邮件统计失败")


@router.post("/category-summary")
async def category_summary(
    payload: CategorySummaryRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    emails = db.query(Email).filter(
        Email.user_id == current_user.id,
        Email.is_deleted == False,
        Email.category == payload.category
    ).order_by(Email.received_at.desc()).limit(_clamp_limit(payload.limit, llm_service.SUMMARY_EMAIL_LIMIT)).all()
    if not emails:
        return not_found("该分类下没有邮件")

    try:
        summary = llm_service.generate_category_summary(db, current_user.id, emails, payload.category)
    except BudgetExceededError as e:
        return forbidden(str(e))
    except Exception as e:
        logger.error(f"生成分类摘要失败: {e}", exc_info=True)
        return server_error("生成分类摘要失败")

    return success({
        "category": payload.category,
        "email_count": len(emails),
        "summary": summary,
    })


@router.get("/{email_id}")
async def get_email(email_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """获取邮件详情，并标记为已读"""
    email = _get_owned_email(db, email_id, current_user.id)
    if not email:
        return not_found("邮件不存在")

    if not email.is_read:
        email.is_read = True
        db.commit()
        db.refresh(email)
    return success(_serialize(email))


@router.patch("/{email_id}")
async def update_email(
    email_id: int,
    payload: EmailUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    email = _get_owned_email(db, email_id, current_user.id)
    if not email:
        return not_found("邮件不存在")

    update_data = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update_data:
        return bad_request("没有需要更新的字段")

    try:
        for key, value in update_data.items():
            setattr(email, key, value)
        db.commit()
        db.refresh(email)
        return success(_serialize(email), msg="邮件已更新")
    except Exception as e:
        db.rollback()
        logger.error(f"更新邮件失败: {e}", exc_info=True)
        return server_error("更新邮件失败")


@router.delete("/{email_id}")
async def delete_email(email_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    email = _get_owned_email(db, email_id, current_user.id)
    if not email:
        return not_found("邮件不存在")

    email.is_deleted = True
    db.commit()
    return success(msg="邮件已删除")
