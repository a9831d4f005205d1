from __future__ import annotations

import asyncio
import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from blueprint_ai.config import Settings
from blueprint_ai.controllers.usage import EligibilityResponse, limit_value
from blueprint_ai.dependencies import (
    ErrorResponse,
    get_gate,
    get_jobs,
    rate_limit,
    require_user,
)
from blueprint_ai.services.admission import (
    AdmissionGate,
    JobStartError,
    RejectReason,
    UsageChargeError,
)
from blueprint_ai.services.analysis_jobs import (
    AnalysisJobRepository,
    AnalysisJobSnapshot,
    JobNotFoundError,
    JobStateError,
    JobStatus,
)
from blueprint_ai.services.job_tracker import JobLifecycleTracker, WatchOutcome

settings = Settings()
logger = logging.getLogger(__name__)

router = APIRouter()


class CreateJobRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    image_key: str = Field(min_length=1)


class AnalyzeResponse(BaseModel):
    status: Literal["accepted", "rejected"]
    reason: str | None = None
    job: AnalysisJobSnapshot | None = None
    usage: EligibilityResponse | None = None


class WatchResponse(BaseModel):
    outcome: WatchOutcome
    polls: int
    job: AnalysisJobSnapshot | None = None


def _not_found(job_id: str) -> HTTPException:
    err = ErrorResponse(code="NOT_FOUND", message=f"job {job_id} not found")
    return HTTPException(status_code=404, detail=err.model_dump())


def _conflict(job_id: str, status: JobStatus) -> HTTPException:
    err = ErrorResponse(
        code="CONFLICT", message=f"job {job_id} is already {status.value}"
    )
    return HTTPException(status_code=409, detail=err.model_dump())


async def _owned_job(
    jobs: AnalysisJobRepository, job_id: str, user_id: str
) -> AnalysisJobSnapshot:
    try:
        return await asyncio.to_thread(jobs.get_for_user, job_id, user_id)
    except JobNotFoundError as exc:
        raise _not_found(job_id) from exc


@router.post(
    "/jobs",
    status_code=201,
    response_model=AnalysisJobSnapshot,
    responses={401: {"model": ErrorResponse}},
)
async def create_job(
    body: CreateJobRequest,
    user_id: str = Depends(require_user),
    jobs: AnalysisJobRepository = Depends(get_jobs),
):
    return await asyncio.to_thread(jobs.create, user_id, body.name, body.image_key)


@router.get(
    "/jobs/{job_id}",
    response_model=AnalysisJobSnapshot,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def job_status(
    job_id: str,
    user_id: str = Depends(require_user),
    jobs: AnalysisJobRepository = Depends(get_jobs),
):
    return await _owned_job(jobs, job_id, user_id)


@router.post(
    "/jobs/{job_id}/analyze",
    status_code=202,
    response_model=AnalyzeResponse,
    responses={
        401: {"model": AnalyzeResponse},
        402: {"model": AnalyzeResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def start_analysis(
    job_id: str,
    user_id: str | None = Depends(rate_limit),
    jobs: AnalysisJobRepository = Depends(get_jobs),
    gate: AdmissionGate = Depends(get_gate),
):
    if user_id is not None:
        job = await _owned_job(jobs, job_id, user_id)
        if job.status is not JobStatus.UPLOADED:
            raise _conflict(job_id, job.status)

    try:
        result = await gate.start_analysis(user_id, job_id)
    except JobStartError as exc:
        if isinstance(exc.__cause__, JobStateError):
            raise _conflict(job_id, exc.__cause__.status) from exc
        err = ErrorResponse(
            code="SERVICE_UNAVAILABLE", message="Analysis could not be started"
        )
        raise HTTPException(status_code=502, detail=err.model_dump()) from exc
    except UsageChargeError as exc:
        err = ErrorResponse(
            code="SERVICE_UNAVAILABLE", message="Usage could not be recorded"
        )
        raise HTTPException(status_code=503, detail=err.model_dump()) from exc

    if not result.accepted:
        if result.reason is RejectReason.NOT_AUTHENTICATED:
            return JSONResponse(
                status_code=401,
                content={"status": "rejected", "reason": result.reason.value},
            )
        eligibility = result.eligibility
        return JSONResponse(
            status_code=402,
            content={
                "status": "rejected",
                "reason": result.reason.value,
                "message": "Monthly analysis limit reached",
                "tier": eligibility.tier.value,
                "limit": limit_value(eligibility.limit),
                "remaining": limit_value(eligibility.remaining),
            },
        )

    usage = None
    if result.usage is not None:
        usage = EligibilityResponse.from_eligibility(
            gate.ledger.eligibility(result.usage)
        )
    return AnalyzeResponse(status="accepted", job=result.job, usage=usage)


@router.get(
    "/jobs/{job_id}/watch",
    response_model=WatchResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def watch_job(
    job_id: str,
    timeout: float = Query(settings.job_poll_deadline_s, gt=0),
    user_id: str = Depends(require_user),
    jobs: AnalysisJobRepository = Depends(get_jobs),
):
    job = await _owned_job(jobs, job_id, user_id)

    async def _fetch(jid: str) -> AnalysisJobSnapshot:
        return await asyncio.to_thread(jobs.get, jid)

    tracker = JobLifecycleTracker(
        _fetch,
        interval=settings.job_poll_interval_s,
        deadline=min(timeout, settings.job_poll_deadline_s),
    )
    try:
        result = await tracker.watch(job_id, initial=job)
    finally:
        tracker.stop()
    return WatchResponse(outcome=result.outcome, polls=result.polls, job=result.job)
