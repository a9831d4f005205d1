from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Float, Integer, String, Text

from .base import Base


class AnalysisJob(Base):
    __tablename__ = "analysis_jobs"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String, nullable=False)
    image_key = Column(String, nullable=False)
    status = Column(
        Enum("uploaded", "processing", "completed", "failed", name="job_status"),
        nullable=False,
        server_default="uploaded",
    )
    symbols = Column(JSON, nullable=False, default=list)
    total_symbols = Column(Integer, nullable=False, default=0)
    average_accuracy = Column(Float, nullable=False, default=0.0)
    is_analyzed = Column(Boolean, nullable=False, default=False)
    confidence = Column(Float, nullable=False, default=0.0)
    summary = Column(Text)
    analysis_date = Column(DateTime(timezone=True))
    processing_error = Column(Text)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


__all__ = ["AnalysisJob"]
