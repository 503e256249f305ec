from sqlalchemy import Column, Integer, String, Text, DateTime, Float, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from mailassist.database import Base


class EmailDraft(Base):
    __tablename__ = "email_drafts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    email_id = Column(Integer, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False)  # 被回复的邮件

    subject = Column(String, nullable=True)
    draft_content = Column(Text, nullable=False)
    body_html = Column(Text, nullable=True)
    tone = Column(String, nullable=True)
    confidence_score = Column(Float, nullable=True)
    context = Column(Text, nullable=True)  # AI给出的回复思路说明
    status = Column(String, default="pending")  # pending / approved / rejected / draft / sent / failed
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    email = relationship("Email")
