"""
AI 调用预算：按自然月记录调用次数、token 与估算费用（单位：美分）
"""
import math
import os
from typing import Optional
from sqlalchemy.orm import Session

from mailassist.model.budget import BudgetUsage, ApiUsageLog
from mailassist.utils.helpers import current_period
from mailassist.utils.logger import get_logger

logger = get_logger("budget_service")

DEFAULT_MONTHLY_BUDGET_CENTS = int(os.getenv("DEFAULT_MONTHLY_BUDGET_CENTS", "1000"))

# 每百万 token 的价格（美分）
PRICING = {
    "input": 300,
    "output": 1500,
}


class BudgetExceededError(Exception):
    """预算已暂停或已用完"""


def calculate_cost(input_tokens: int, output_tokens: int) -> int:
    input_cost = (input_tokens / 1_000_000) * PRICING["input"]
    output_cost = (output_tokens / 1_000_000) * PRICING["output"]
    return math.ceil(input_cost + output_cost)


def get_current_budget(db: Session, user_id: int) -> Optional[BudgetUsage]:
    period_start, _ = current_period()
    return db.query(BudgetUsage).filter(
        BudgetUsage.user_id == user_id,
        BudgetUsage.period_start == period_start
    ).first()


def get_or_create_budget(db: Session, user_id: int) -> BudgetUsage:
    """获取当月预算记录，不存在时按默认上限创建（调用方负责提交）"""
    budget = get_current_budget(db, user_id)
    if budget:
        return budget
    period_start, period_end = current_period()
    budget = BudgetUsage(
        user_id=user_id,
        period_start=period_start,
        period_end=period_end,
        budget_limit_cents=DEFAULT_MONTHLY_BUDGET_CENTS,
        api_calls_total=0,
        api_calls_claude=0,
        tokens_input=0,
        tokens_output=0,
        estimated_cost_cents=0,
        is_paused=False,
    )
    db.add(budget)
    db.flush()
    logger.info(f"为用户 {user_id} 创建 {period_start} 预算记录，上限 {DEFAULT_MONTHLY_BUDGET_CENTS} 美分")
    return budget


def percent_used(budget: Optional[BudgetUsage]) -> int:
    if not budget or not budget.budget_limit_cents:
        return 0
    return round((budget.estimated_cost_cents or 0) / budget.budget_limit_cents * 100)


def check_budget(db: Session, user_id: int) -> dict:
    budget = get_current_budget(db, user_id)
    if not budget:
        return {"allowed": True, "remaining": DEFAULT_MONTHLY_BUDGET_CENTS, "reason": None}

    if budget.is_paused:
        return {"allowed": False, "remaining": 0, "reason": "预算已暂停"}

    remaining = (budget.budget_limit_cents or 0) - (budget.estimated_cost_cents or 0)
    return {
        "allowed": remaining > 0,
        "remaining": remaining,
        "reason": "已达到预算上限" if remaining <= 0 else None,
    }


def ensure_budget(db: Session, user_id: int):
    result = check_budget(db, user_id)
    if not result["allowed"]:
        logger.info(f"用户 {user_id} AI调用被拒绝: {result['reason']}")
        raise BudgetExceededError(result["reason"])


def log_api_usage(
    db: Session,
    user_id: int,
    email_id: Optional[int],
    operation: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    success: bool = True,
    error: Optional[str] = None,
) -> int:
    """
    记录一次AI调用并累加当月预算计数，返回本次费用（美分）
    记录失败只写日志，不影响调用方
    """
    cost_cents = calculate_cost(input_tokens, output_tokens)
    try:
        db.add(ApiUsageLog(
            user_id=user_id,
            email_id=email_id,
            api_provider="claude",
            operation=operation,
            tokens_input=input_tokens,
            tokens_output=output_tokens,
            cost_cents=cost_cents,
            success=success,
            error_message=error,
        ))

        budget = get_current_budget(db, user_id)
        if budget:
            budget.api_calls_total = (budget.api_calls_total or 0) + 1
            budget.api_calls_claude = (budget.api_calls_claude or 0) + 1
            budget.tokens_input = (budget.tokens_input or 0) + input_tokens
            budget.tokens_output = (budget.tokens_output or 0) + output_tokens
            budget.estimated_cost_cents = (budget.estimated_cost_cents or 0) + cost_cents

        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"记录AI调用用量失败: {e}", exc_info=True)
    return cost_cents
