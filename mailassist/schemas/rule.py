from pydantic import BaseModel, field_validator
from typing import Optional, List, Any
from datetime import datetime


def _require_items(v, label):
    if v is not None and len(v) == 0:
        raise ValueError(f'至少需要一个{label}')
    return v


class RuleCreate(BaseModel):
    name: str
    conditions: List[Any]
    actions: List[Any]
    enabled: bool = True

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError('规则名称不能为空')
        return v.strip()

    @field_validator('conditions')
    @classmethod
    def validate_conditions(cls, v):
        return _require_items(v, '条件')

    @field_validator('actions')
    @classmethod
    def validate_actions(cls, v):
        return _require_items(v, '动作')


class RuleUpdate(BaseModel):
    name: Optional[str] = None
    conditions: Optional[List[Any]] = None
    actions: Optional[List[Any]] = None
    enabled: Optional[bool] = None

    @field_validator('conditions')
    @classmethod
    def validate_conditions(cls, v):
        return _require_items(v, '条件')

    @field_validator('actions')
    @classmethod
    def validate_actions(cls, v):
        return _require_items(v, '动作')


class RuleResponse(BaseModel):
    id: int
    name: str
    conditions: List[Any]
    actions: List[Any]
    enabled: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
