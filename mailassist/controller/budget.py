from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mailassist.database import get_db
from mailassist.model.user import User
from mailassist.model.budget import ApiUsageLog
from mailassist.controller.auth import get_current_user
from mailassist.schemas.budget import BudgetUpdate
from mailassist.service.budget_service import get_or_create_budget, percent_used
from mailassist.utils.helpers import period_start_datetime
from mailassist.utils.response import success, bad_request, server_error
from mailassist.utils.logger import get_logger

logger = get_logger("budget")

router = APIRouter()

RECENT_USAGE_LIMIT = 20


def _serialize_budget(budget) -> dict:
    return {
        "periodStart": budget.period_start,
        "periodEnd": budget.period_end,
        "apiCallsTotal": budget.api_calls_total or 0,
        "apiCallsClaude": budget.api_calls_claude or 0,
        "tokensInput": budget.tokens_input or 0,
        "tokensOutput": budget.tokens_output or 0,
        "estimatedCostCents": budget.estimated_cost_cents or 0,
        "budgetLimitCents": budget.budget_limit_cents,
        "percentUsed": percent_used(budget),
        "isPaused": bool(budget.is_paused),
        "pauseReason": budget.pause_reason,
        "alertsSent": budget.alerts_sent or 0,
    }


@router.get("/status")
async def budget_status(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        budget = get_or_create_budget(db, current_user.id)
        db.commit()

        logs = db.query(ApiUsageLog).filter(
            ApiUsageLog.user_id == current_user.id,
            ApiUsageLog.created_at >= period_start_datetime()
        ).order_by(ApiUsageLog.created_at.desc(), ApiUsageLog.id.desc()).limit(RECENT_USAGE_LIMIT).all()

        return success({
            "budget": _serialize_budget(budget),
            "recentUsage": [
                {
                    "id": log.id,
                    "operation": log.operation,
                    "apiProvider": log.api_provider,
                    "tokensInput": log.tokens_input,
                    "tokensOutput": log.tokens_output,
                    "costCents": log.cost_cents,
                    "success": log.success,
                    "errorMessage": log.error_message,
                    "createdAt": log.created_at,
                }
                for log in logs
            ],
        })
    except Exception as e:
        db.rollback()
        logger.error(f"获取预算状态失败: {e}", exc_info=True)
        return server_error("获取预算状态失败")


@router.patch("/update")
async def update_budget(payload: BudgetUpdate, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    update_data = payload.model_dump(exclude_unset=True)
    if not update_data:
        return bad_request("没有需要更新的字段")

    try:
        budget = get_or_create_budget(db, current_user.id)
        if payload.budget_limit_cents is not None:
            budget.budget_limit_cents = payload.budget_limit_cents
        if payload.is_paused is not None:
            budget.is_paused = payload.is_paused
            if not payload.is_paused:
                budget.pause_reason = None
        if "pause_reason" in update_data and (payload.is_paused is not False):
            budget.pause_reason = payload.pause_reason
        db.commit()
        db.refresh(budget)
        logger.info(f"用户 {current_user.id} 更新预算: {update_data}")
        return success({"budget": _serialize_budget(budget)}, msg="预算设置已更新")
    except Exception as e:
        db.rollback()
        logger.error(f"更新预算失败: {e}", exc_info=True)
        return server_error("更新预算失败")
