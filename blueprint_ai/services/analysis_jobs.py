"""Analysis job records: creation, status reads and forward-only transitions.

Every transition is a conditional ``UPDATE .. WHERE status = <expected>`` so
a job moves ``uploaded -> processing -> completed | failed`` at most once and
terminal states never change.
"""
from __future__ import annotations

import enum
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from blueprint_ai.models import AnalysisJob

logger = logging.getLogger(__name__)


class JobStatus(str, enum.Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    JobStatus.UPLOADED: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}


class JobNotFoundError(LookupError):
    pass


class JobStateError(Exception):
    """Raised when a transition is requested from the wrong status."""

    def __init__(self, job_id: str, status: JobStatus, expected: JobStatus):
        super().__init__(f"job {job_id} is {status.value}, expected {expected.value}")
        self.job_id = job_id
        self.status = status
        self.expected = expected


class SymbolPosition(BaseModel):
    x: float
    y: float
    width: float
    height: float


class Symbol(BaseModel):
    id: str
    type: str
    name: str
    description: str = ""
    category: Literal[
        "hydraulic", "pneumatic", "mechanical", "electrical", "other"
    ] = "other"
    position: SymbolPosition
    confidence: float = Field(ge=0.0, le=1.0)


class AIAnalysis(BaseModel):
    is_analyzed: bool = False
    confidence: float = 0.0
    analysis_date: datetime | None = None
    summary: str | None = None
    error_message: str | None = None


class AnalysisJobSnapshot(BaseModel):
    """Read-only view of an analysis job record."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    name: str
    image_key: str
    status: JobStatus
    symbols: list[Symbol] = Field(default_factory=list)
    total_symbols: int = 0
    average_accuracy: float = 0.0
    ai_analysis: AIAnalysis = Field(default_factory=AIAnalysis)
    created_at: datetime | None = None
    updated_at: datetime | None = None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _to_snapshot(row: AnalysisJob) -> AnalysisJobSnapshot:
    return AnalysisJobSnapshot(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        image_key=row.image_key,
        status=JobStatus(row.status),
        symbols=[Symbol.model_validate(s) for s in row.symbols or []],
        total_symbols=row.total_symbols or 0,
        average_accuracy=float(row.average_accuracy or 0.0),
        ai_analysis=AIAnalysis(
            is_analyzed=bool(row.is_analyzed),
            confidence=float(row.confidence or 0.0),
            analysis_date=_as_utc(row.analysis_date),
            summary=row.summary,
            error_message=row.processing_error,
        ),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


class AnalysisJobRepository:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def create(self, user_id: str, name: str, image_key: str) -> AnalysisJobSnapshot:
        with self._session_factory() as db:
            job = AnalysisJob(
                id=str(uuid.uuid4()),
                user_id=user_id,
                name=name,
                image_key=image_key,
                status=JobStatus.UPLOADED.value,
                symbols=[],
            )
            db.add(job)
            db.commit()
            db.refresh(job)
            snapshot = _to_snapshot(job)
        logger.info("Created analysis job %s for user %s", snapshot.id, user_id)
        return snapshot

    def get(self, job_id: str) -> AnalysisJobSnapshot:
        with self._session_factory() as db:
            job = db.get(AnalysisJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return _to_snapshot(job)

    def get_for_user(self, job_id: str, user_id: str) -> AnalysisJobSnapshot:
        with self._session_factory() as db:
            job = db.scalars(
                select(AnalysisJob).where(
                    AnalysisJob.id == job_id, AnalysisJob.user_id == user_id
                )
            ).first()
            if job is None:
                raise JobNotFoundError(job_id)
            return _to_snapshot(job)

    def _transition(
        self, job_id: str, expected: JobStatus, values: dict[str, Any]
    ) -> AnalysisJobSnapshot:
        with self._session_factory() as db:
            result = db.execute(
                update(AnalysisJob)
                .where(AnalysisJob.id == job_id, AnalysisJob.status == expected.value)
                .values(updated_at=datetime.now(timezone.utc), **values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if not result.rowcount:
                current = db.get(AnalysisJob, job_id)
                if current is None:
                    raise JobNotFoundError(job_id)
                raise JobStateError(job_id, JobStatus(current.status), expected)
            return _to_snapshot(db.get(AnalysisJob, job_id))

    def mark_processing(self, job_id: str) -> AnalysisJobSnapshot:
        return self._transition(
            job_id, JobStatus.UPLOADED, {"status": JobStatus.PROCESSING.value}
        )

    def complete(
        self,
        job_id: str,
        symbols: Iterable[Symbol | dict],
        confidence: float,
        summary: str | None = None,
    ) -> AnalysisJobSnapshot:
        parsed = [Symbol.model_validate(s) for s in symbols]
        average = (
            sum(s.confidence for s in parsed) / len(parsed) if parsed else 0.0
        )
        snapshot = self._transition(
            job_id,
            JobStatus.PROCESSING,
            {
                "status": JobStatus.COMPLETED.value,
                "symbols": [s.model_dump() for s in parsed],
                "total_symbols": len(parsed),
                "average_accuracy": average,
                "is_analyzed": True,
                "confidence": confidence,
                "summary": summary,
                "analysis_date": datetime.now(timezone.utc),
            },
        )
        logger.info("Job %s completed with %s symbols", job_id, len(parsed))
        return snapshot

    def fail(self, job_id: str, error: str) -> AnalysisJobSnapshot:
        snapshot = self._transition(
            job_id,
            JobStatus.PROCESSING,
            {"status": JobStatus.FAILED.value, "processing_error": error},
        )
        logger.warning("Job %s failed: %s", job_id, error)
        return snapshot


__all__ = [
    "JobStatus",
    "JobNotFoundError",
    "JobStateError",
    "Symbol",
    "SymbolPosition",
    "AIAnalysis",
    "AnalysisJobSnapshot",
    "AnalysisJobRepository",
]
