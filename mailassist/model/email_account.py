from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from mailassist.database import Base


class EmailAccount(Base):
    """
    邮箱账户模型
    OAuth 账户（gmail/outlook）保存令牌，IMAP 账户保存服务器配置与密码，敏感字段均加密存储
    """
    __tablename__ = "email_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "email", name="uq_user_account_email"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)  # gmail / outlook / icloud / yahoo / spacemail / custom
    email = Column(String, index=True, nullable=False)
    display_name = Column(String, nullable=True)

    # IMAP/SMTP配置
    imap_host = Column(String, nullable=True)
    imap_port = Column(Integer, default=993)
    smtp_host = Column(String, nullable=True)
    smtp_port = Column(Integer, default=587)
    username = Column(String, nullable=True)
    password_encrypted = Column(Text, nullable=True)

    # OAuth令牌
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    # 状态
    connection_status = Column(String, default="connected")  # connected / error
    error_message = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    sync_enabled = Column(Boolean, default=True)
    sync_frequency_minutes = Column(Integer, default=15)
    sync_from_date = Column(DateTime, nullable=True)  # 同步起点，为空时取最近7天
    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="email_accounts")
    emails = relationship("Email", back_populates="account", cascade="all, delete-orphan")
