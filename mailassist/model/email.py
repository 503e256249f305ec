from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Float, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from mailassist.database import Base


class Email(Base):
    """
    邮件模型
    """
    __tablename__ = "emails"
    __table_args__ = (
        # 同一账户下服务商消息ID唯一
        UniqueConstraint("email_account_id", "message_id", name="uq_account_message"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email_account_id = Column(Integer, ForeignKey("email_accounts.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    message_id = Column(String, nullable=False, index=True)  # 服务商消息ID（Gmail/Graph id 或 Message-ID）
    thread_id = Column(String, nullable=True)

    # 邮件基本信息
    subject = Column(String, nullable=False, default="(无主题)")
    from_address = Column(String, nullable=True, index=True)
    from_name = Column(String, nullable=True)
    to_addresses = Column(JSON, default=list)  # [{"email": ..., "name": ...}]
    cc_addresses = Column(JSON, default=list)

    # 邮件内容
    body_text = Column(Text, nullable=True)
    body_html = Column(Text, nullable=True)
    snippet = Column(String(500), nullable=True)
    labels = Column(JSON, default=list)
    has_attachments = Column(Boolean, default=False)
    attachments = Column(JSON, default=list)
    received_at = Column(DateTime, nullable=False, index=True)

    # 邮件状态
    is_read = Column(Boolean, default=False)
    is_starred = Column(Boolean, default=False)
    is_archived = Column(Boolean, default=False)
    is_deleted = Column(Boolean, default=False)

    # AI分析结果
    priority_score = Column(Float, nullable=True)
    priority_level = Column(String, nullable=True, index=True)  # critical / high / medium / low
    category = Column(String, nullable=True, index=True)
    sentiment = Column(String, nullable=True)
    action_items = Column(JSON, default=list)
    summary = Column(Text, nullable=True)
    tags = Column(JSON, default=list)
    ai_analyzed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    account = relationship("EmailAccount", back_populates="emails")
