from __future__ import annotations

import asyncio
import logging

import redis
import redis.asyncio as aioredis
from redis.exceptions import RedisError
from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel

from blueprint_ai import db as db_module
from blueprint_ai.config import Settings
from blueprint_ai.services.admission import AdmissionGate
from blueprint_ai.services.analysis_jobs import AnalysisJobRepository, AnalysisJobSnapshot
from blueprint_ai.services.analysis_queue import AnalysisQueue, start_analysis_job
from blueprint_ai.services.usage_ledger import UsageLedger

settings = Settings()
redis_client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
queue_client = redis.from_url(settings.redis_url)


logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    code: str
    message: str


async def require_api_headers(
    x_api_key: str = Header(..., alias="X-API-Key"),
    x_api_ver: str | None = Header(None, alias="X-API-Ver"),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> str | None:
    if x_api_ver is None:
        err = ErrorResponse(code="UPGRADE_REQUIRED", message="Missing API version")
        raise HTTPException(status_code=426, detail=err.model_dump())

    if x_api_ver != "v1":
        err = ErrorResponse(code="UPGRADE_REQUIRED", message="Invalid API version")
        raise HTTPException(status_code=426, detail=err.model_dump())

    if x_api_key != settings.api_key:
        err = ErrorResponse(code="UNAUTHORIZED", message="Invalid API key")
        raise HTTPException(status_code=401, detail=err.model_dump())

    return (x_user_id or "").strip() or None


async def rate_limit(
    request: Request, user_id: str | None = Depends(require_api_headers)
) -> str | None:
    """Throttle requests by IP and user via Redis."""
    client_host = request.client.host if request.client else ""
    ip = client_host
    xff = request.headers.get("X-Forwarded-For")
    if xff and client_host in settings.trusted_proxies:
        forwarded = [h.strip() for h in xff.split(",") if h.strip()]
        proxies = forwarded[1:] + [client_host]
        if forwarded and all(p in settings.trusted_proxies for p in proxies):
            ip = forwarded[0]
    ip_key = f"rate:ip:{ip}"
    user_key = f"rate:user:{user_id or 'anonymous'}"

    try:
        pipe = redis_client.pipeline()
        pipe.incr(ip_key)
        pipe.expire(ip_key, 60)
        pipe.incr(user_key)
        pipe.expire(user_key, 60)
        ip_count, _, user_count, _ = await pipe.execute()
    except RedisError as exc:
        logger.exception("Redis unavailable for rate limiting: %s", exc)
        err = ErrorResponse(
            code="SERVICE_UNAVAILABLE", message="Rate limiter unavailable"
        )
        raise HTTPException(status_code=503, detail=err.model_dump()) from exc
    if (
        ip_count > settings.rate_limit_ip_per_min
        or user_count > settings.rate_limit_user_per_min
    ):
        err = ErrorResponse(code="TOO_MANY_REQUESTS", message="Rate limit exceeded")
        raise HTTPException(status_code=429, detail=err.model_dump())

    return user_id


async def require_user(user_id: str | None = Depends(rate_limit)) -> str:
    if user_id is None:
        err = ErrorResponse(code="UNAUTHORIZED", message="Missing user ID")
        raise HTTPException(status_code=401, detail=err.model_dump())
    return user_id


def get_ledger() -> UsageLedger:
    return UsageLedger(db_module.SessionLocal, settings)


def get_jobs() -> AnalysisJobRepository:
    return AnalysisJobRepository(db_module.SessionLocal)


_gate: AdmissionGate | None = None


def get_gate() -> AdmissionGate:
    """Process-wide gate; its per-user locks must outlive a single request."""
    global _gate
    if _gate is None:
        jobs = get_jobs()
        queue = AnalysisQueue(settings, client=queue_client)

        async def _start(job_id: str) -> AnalysisJobSnapshot:
            return await asyncio.to_thread(start_analysis_job, job_id, jobs, queue)

        _gate = AdmissionGate(
            get_ledger(), _start, paywall_enabled=settings.paywall_enabled
        )
    return _gate
