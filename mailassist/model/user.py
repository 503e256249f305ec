from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from mailassist.database import Base

DEFAULT_SETTINGS = {
    "emailNotifications": True,
    "autoAnalyze": True,
    "autoDraft": False,
}


class User(Base):
    """
    用户模型
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)  # 登录邮箱（小写）
    password_hash = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    settings = Column(JSON, default=lambda: dict(DEFAULT_SETTINGS))  # 用户偏好设置
    is_active = Column(Boolean, default=True)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    email_accounts = relationship("EmailAccount", back_populates="user", cascade="all, delete-orphan")
    sessions = relationship("UserSession", back_populates="user", cascade="all, delete-orphan")
