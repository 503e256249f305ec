from sqlalchemy import Column, Integer, String, Text, Boolean, Date, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from mailassist.database import Base


class BudgetUsage(Base):
    """
    按自然月统计的AI调用预算
    """
    __tablename__ = "budget_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "period_start", name="uq_user_period"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    api_calls_total = Column(Integer, default=0)
    api_calls_claude = Column(Integer, default=0)
    tokens_input = Column(Integer, default=0)
    tokens_output = Column(Integer, default=0)
    estimated_cost_cents = Column(Integer, default=0)
    budget_limit_cents = Column(Integer, default=1000)
    is_paused = Column(Boolean, default=False)
    pause_reason = Column(String, nullable=True)
    alerts_sent = Column(Integer, default=0)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class ApiUsageLog(Base):
    __tablename__ = "api_usage_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    email_id = Column(Integer, ForeignKey("emails.id", ondelete="SET NULL"), nullable=True)
    api_provider = Column(String, default="claude")
    operation = Column(String, nullable=False)  # analyze_email / generate_draft / category_summary
    tokens_input = Column(Integer, default=0)
    tokens_output = Column(Integer, default=0)
    cost_cents = Column(Integer, default=0)
    success = Column(Boolean, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=func.now(), index=True)
