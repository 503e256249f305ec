from pydantic import BaseModel, field_validator
from typing import Optional, List, Any, Literal
from datetime import datetime

MAX_BATCH_SIZE = 100

BatchAction = Literal[
    "mark_read", "mark_unread", "star", "unstar", "archive", "unarchive",
    "set_category", "set_priority", "delete",
]


class EmailResponse(BaseModel):
    id: int
    email_account_id: int
    message_id: str
    thread_id: Optional[str] = None
    subject: str
    from_address: Optional[str] = None
    from_name: Optional[str] = None
    to_addresses: Optional[List[Any]] = None
    cc_addresses: Optional[List[Any]] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    snippet: Optional[str] = None
    labels: Optional[List[Any]] = None
    has_attachments: bool = False
    attachments: Optional[List[Any]] = None
    received_at: datetime
    is_read: bool = False
    is_starred: bool = False
    is_archived: bool = False
    priority_score: Optional[float] = None
    priority_level: Optional[str] = None
    category: Optional[str] = None
    sentiment: Optional[str] = None
    action_items: Optional[List[Any]] = None
    summary: Optional[str] = None
    tags: Optional[List[Any]] = None
    ai_analyzed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EmailUpdate(BaseModel):
    is_read: Optional[bool] = None
    is_starred: Optional[bool] = None
    is_archived: Optional[bool] = None
    category: Optional[str] = None
    priority_level: Optional[str] = None


class BatchRequest(BaseModel):
    email_ids: List[int]
    action: BatchAction
    value: Optional[str] = None

    @field_validator('email_ids')
    @classmethod
    def validate_email_ids(cls, v):
        if not v:
            raise ValueError('email_ids 不能为空')
        if len(v) > MAX_BATCH_SIZE:
            raise ValueError(f'单次批量操作最多 {MAX_BATCH_SIZE} 封邮件')
        return v


class CategorySummaryRequest(BaseModel):
    category: str
    limit: int = 50

    @field_validator('category')
    @classmethod
    def validate_category(cls, v):
        if not v.strip():
            raise ValueError('分类不能为空')
        return v.strip()
