from pydantic import BaseModel, field_validator
from typing import Optional


class BudgetUpdate(BaseModel):
    budget_limit_cents: Optional[int] = None
    is_paused: Optional[bool] = None
    pause_reason: Optional[str] = None

    @field_validator('budget_limit_cents')
    @classmethod
    def validate_limit(cls, v):
        if v is not None and v < 0:
            raise ValueError('预算上限不能为负数')
        return v
