from pydantic import BaseModel, field_validator, Field
from typing import Optional, Any
from datetime import datetime
import re

from mailassist.utils.helpers import is_valid_email

# bcrypt 只接受72字节以内的密码
MAX_PASSWORD_BYTES = 72


class RegisterRequest(BaseModel):
    email: str
    password: str
    full_name: Optional[str] = Field(None, max_length=100)

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        v = v.strip().lower()
        if not is_valid_email(v):
            raise ValueError('请输入有效的邮箱地址')
        return v

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        if len(v) < 8 or not re.search(r'[A-Z]', v) or not re.search(r'[a-z]', v) or not re.search(r'[0-9]', v):
            raise ValueError('密码至少8位，且必须包含大写字母、小写字母和数字')
        if len(v.encode('utf-8')) > MAX_PASSWORD_BYTES:
            raise ValueError(f'密码长度不能超过 {MAX_PASSWORD_BYTES} 字节')
        return v


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower()


class ProfileUpdate(BaseModel):
    full_name: str

    @field_validator('full_name')
    @classmethod
    def validate_full_name(cls, v):
        if v is None or not v.strip():
            raise ValueError('姓名不能为空')
        return v.strip()


class SettingsUpdate(BaseModel):
    settings: Any

    @field_validator('settings', mode='before')
    @classmethod
    def validate_settings(cls, v):
        if not isinstance(v, dict):
            raise ValueError('settings 必须是对象')
        return v


class UserResponse(BaseModel):
    id: int
    email: str
    full_name: Optional[str] = None
    settings: Optional[dict] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
