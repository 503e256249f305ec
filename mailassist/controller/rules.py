from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mailassist.database import get_db
from mailassist.model.user import User
from mailassist.model.rule import EmailRule
from mailassist.controller.auth import get_current_user
from mailassist.schemas.rule import RuleCreate, RuleUpdate, RuleResponse
from mailassist.utils.response import success, bad_request, not_found, server_error
from mailassist.utils.logger import get_logger

logger = get_logger("rules")

router = APIRouter()


def _get_owned_rule(db: Session, rule_id: int, user_id: int):
    return db.query(EmailRule).filter(EmailRule.id == rule_id, EmailRule.user_id == user_id).first()


@router.get("")
async def list_rules(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rules = db.query(EmailRule).filter(
        EmailRule.user_id == current_user.id
    ).order_by(EmailRule.created_at.desc(), EmailRule.id.desc()).all()
    return success([RuleResponse.model_validate(r) for r in rules])


@router.post("")
async def create_rule(payload: RuleCreate, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        rule = EmailRule(
            user_id=current_user.id,
            name=payload.name,
            conditions=payload.conditions,
            actions=payload.actions,
            enabled=payload.enabled,
        )
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return success(RuleResponse.model_validate(rule), msg="规则已创建", status_code=201)
    except Exception as e:
        db.rollback()
        logger.error(f"创建规则失败: {e}", exc_info=True)
        return server_error("创建规则失败")


@router.get("/{rule_id}")
async def get_rule(rule_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rule = _get_owned_rule(db, rule_id, current_user.id)
    if not rule:
        return not_found("规则不存在")
    return success(RuleResponse.model_validate(rule))


@router.patch("/{rule_id}")
async def update_rule(
    rule_id: int,
    payload: RuleUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    rule = _get_owned_rule(db, rule_id, current_user.id)
    if not rule:
        return not_found("规则不存在")

    update_data = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update_data:
        return bad_request("没有需要更新的字段")

    for key, value in update_data.items():
        setattr(rule, key, value)
    db.commit()
    db.refresh(rule)
    return success(RuleResponse.model_validate(rule), msg="规则已更新")


@router.delete("/{rule_id}")
async def delete_rule(rule_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rule = _get_owned_rule(db, rule_id, current_user.id)
    if not rule:
        return not_found("规则不存在")

    db.delete(rule)
    db.commit()
    return success(msg="规则已删除")
