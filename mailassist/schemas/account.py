from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime

from mailassist.utils.helpers import is_valid_email


class ImapConnectRequest(BaseModel):
    provider: str
    email_address: str
    password: Optional[str] = Field(None, validate_default=True)
    imap_host: Optional[str] = None
    imap_port: Optional[int] = None
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None

    @field_validator('provider')
    @classmethod
    def normalize_provider(cls, v):
        return v.strip().lower()

    @field_validator('email_address')
    @classmethod
    def validate_email_address(cls, v):
        v = v.strip()
        if not is_valid_email(v):
            raise ValueError('请输入有效的邮箱地址')
        return v

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        if not v:
            raise ValueError('IMAP/SMTP 邮箱必须提供密码')
        return v


class OutlookCodeRequest(BaseModel):
    code: Optional[str] = None
    code_verifier: Optional[str] = None


class AccountUpdate(BaseModel):
    sync_frequency_minutes: Optional[int] = None
    is_active: Optional[bool] = None
    sync_enabled: Optional[bool] = None
    sync_from_date: Optional[datetime] = None

    @field_validator('sync_frequency_minutes')
    @classmethod
    def validate_frequency(cls, v):
        if v is not None and v < 1:
            raise ValueError('同步频率必须大于0分钟')
        return v


class SyncRequest(BaseModel):
    account_id: Optional[int] = None


class AccountResponse(BaseModel):
    id: int
    provider: str
    email: str
    display_name: Optional[str] = None
    imap_host: Optional[str] = None
    imap_port: Optional[int] = None
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None
    connection_status: Optional[str] = None
    error_message: Optional[str] = None
    is_active: bool
    sync_enabled: bool
    sync_frequency_minutes: Optional[int] = None
    sync_from_date: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
