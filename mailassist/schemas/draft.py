from pydantic import BaseModel
from typing import Optional, Literal
from datetime import datetime


class DraftCreate(BaseModel):
    email_id: Optional[int] = None
    tone: Optional[str] = "professional"
    instructions: Optional[str] = ""
    skip_ai: bool = False
    draft_content: Optional[str] = None


class DraftUpdate(BaseModel):
    draft_content: Optional[str] = None
    status: Optional[Literal["pending", "approved", "rejected", "draft"]] = None


class DraftResponse(BaseModel):
    id: int
    email_id: int
    subject: Optional[str] = None
    draft_content: str
    body_html: Optional[str] = None
    tone: Optional[str] = None
    confidence_score: Optional[float] = None
    context: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
