from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from datetime import datetime

from mailassist.database import get_db
from mailassist.model.user import User
from mailassist.model.template import EmailTemplate
from mailassist.controller.auth import get_current_user
from mailassist.schemas.template import TemplateCreate, TemplateUpdate, TemplateUse, TemplateResponse
from mailassist.utils.helpers import render_placeholders
from mailassist.utils.response import success, bad_request, not_found, server_error
from mailassist.utils.logger import get_logger

logger = get_logger("templates")

router = APIRouter()


def _get_owned_template(db: Session, template_id: int, user_id: int):
    return db.query(EmailTemplate).filter(
        EmailTemplate.id == template_id,
        EmailTemplate.user_id == user_id
    ).first()


@router.get("")
async def list_templates(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """按使用次数、再按创建时间倒序"""
    templates = db.query(EmailTemplate).filter(
        EmailTemplate.user_id == current_user.id
    ).order_by(
        EmailTemplate.usage_count.desc(),
        EmailTemplate.created_at.desc(),
        EmailTemplate.id.desc()
    ).all()
    return success({
        "templates": [TemplateResponse.model_validate(t) for t in templates],
        "total": len(templates),
    })


@router.post("")
async def create_template(
    payload: TemplateCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    try:
        template = EmailTemplate(
            user_id=current_user.id,
            name=payload.name,
            subject=payload.subject or "",
            body=payload.body,
            category=payload.category or "general",
            tone=payload.tone or "professional",
            is_active=True,
            usage_count=0,
        )
        db.add(template)
        db.commit()
        db.refresh(template)
        return success(TemplateResponse.model_validate(template), msg="模板已创建", status_code=201)
    except Exception as e:
        db.rollback()
        logger.error(f"创建模板失败: {e}", exc_info=True)
        return server_error("创建模板失败")


@router.post("/use/{template_id}")
async def use_template(
    template_id: int,
    payload: TemplateUse = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    使用模板：替换 {{变量}} 占位符并累加使用次数
    """
    template = db.query(EmailTemplate).filter(
        EmailTemplate.id == template_id,
        EmailTemplate.user_id == current_user.id,
        EmailTemplate.is_active == True
    ).first()
    if not template:
        return not_found("模板不存在或已停用")

    variables = payload.variables if payload else {}
    template.usage_count = (template.usage_count or 0) + 1
    template.last_used_at = datetime.utcnow()
    db.commit()
    db.refresh(template)

    rendered = TemplateResponse.model_validate(template).model_dump()
    rendered["subject"] = render_placeholders(template.subject, variables)
    rendered["body"] = render_placeholders(template.body, variables)
    return success({
        "template": rendered,
        "variables_replaced": list(variables.keys()),
    })


@router.get("/{template_id}")
async def get_template(template_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    template = _get_owned_template(db, template_id, current_user.id)
    if not template:
        return not_found("模板不存在")
    return success(TemplateResponse.model_validate(template))


@router.patch("/{template_id}")
async def update_template(
    template_id: int,
    payload: TemplateUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    template = _get_owned_template(db, template_id, current_user.id)
    if not template:
        return not_found("模板不存在")

    update_data = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update_data:
        return bad_request("没有需要更新的字段")

    for key, value in update_data.items():
        setattr(template, key, value)
    db.commit()
    db.refresh(template)
    return success(TemplateResponse.model_validate(template), msg="模板已更新")


@router.delete("/{template_id}")
async def delete_template(template_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    template = _get_owned_template(db, template_id, current_user.id)
    if not template:
        return not_found("模板不存在")

    db.delete(template)
    db.commit()
    return success(msg="模板已删除")
