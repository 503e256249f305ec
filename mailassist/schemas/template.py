from pydantic import BaseModel, field_validator
from typing import Optional, Dict, Any
from datetime import datetime


class TemplateCreate(BaseModel):
    name: str
    body: str
    subject: Optional[str] = ""
    category: Optional[str] = None
    tone: Optional[str] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError('模板名称不能为空')
        return v.strip()

    @field_validator('body')
    @classmethod
    def validate_body(cls, v):
        if not v or not v.strip():
            raise ValueError('模板内容不能为空')
        return v.strip()


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    category: Optional[str] = None
    tone: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator('name', 'body')
    @classmethod
    def validate_not_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError('模板名称和内容不能为空')
        return v.strip() if v is not None else v


class TemplateUse(BaseModel):
    variables: Dict[str, Any] = {}


class TemplateResponse(BaseModel):
    id: int
    name: str
    subject: Optional[str] = None
    body: str
    category: Optional[str] = None
    tone: Optional[str] = None
    is_active: bool
    usage_count: int
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
