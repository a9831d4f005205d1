from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Integer, Numeric, String

from .base import Base


class AIUsage(Base):
    """Per-user analysis ledger: lifetime and monthly counters plus subscription."""

    __tablename__ = "ai_usage"

    user_id = Column(String(64), primary_key=True)
    analysis_count = Column(Integer, nullable=False, server_default="0")
    monthly_analysis_count = Column(Integer, nullable=False, server_default="0")
    last_analysis_date = Column(DateTime(timezone=True))
    current_month_year = Column(String(7), nullable=False)  # e.g. "2025-09"
    total_cost = Column(Numeric(12, 4), nullable=False, server_default="0")
    tier = Column(
        Enum("free", "basic", "premium", name="subscription_tier"),
        nullable=False,
        server_default="free",
    )
    subscription_start = Column(DateTime(timezone=True))
    subscription_end = Column(DateTime(timezone=True))
    # NULL means unlimited
    analysis_limit = Column(Integer, nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


__all__ = ["AIUsage"]
