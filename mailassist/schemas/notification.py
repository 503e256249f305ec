from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class NotificationUpdate(BaseModel):
    is_read: bool = True


class NotificationResponse(BaseModel):
    id: int
    email_id: Optional[int] = None
    type: str
    title: str
    message: Optional[str] = None
    is_read: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
