from __future__ import annotations

import json
import logging

import redis

from blueprint_ai.config import Settings
from blueprint_ai.metrics import analysis_queue_push_total
from blueprint_ai.services.analysis_jobs import AnalysisJobRepository, AnalysisJobSnapshot

logger = logging.getLogger(__name__)


class AnalysisQueue:
    """Producer for the symbol detection worker (Redis list ``<queue>:wait``)."""

    def __init__(self, settings: Settings | None = None, client: redis.Redis | None = None):
        cfg = settings or Settings()
        self.name = cfg.analysis_queue
        self.client = client or redis.from_url(cfg.redis_url)

    def enqueue(self, job_id: str) -> None:
        payload = json.dumps({"jobId": job_id})
        try:
            self.client.lpush(f"{self.name}:wait", payload)
        except redis.RedisError as exc:
            logger.exception("Failed to enqueue analysis job_id=%s: %s", job_id, exc)
            raise
        analysis_queue_push_total.inc()


def start_analysis_job(
    job_id: str, jobs: AnalysisJobRepository, queue: AnalysisQueue
) -> AnalysisJobSnapshot:
    """Hand an uploaded job to the worker: ``uploaded -> processing`` then enqueue."""
    job = jobs.mark_processing(job_id)
    try:
        queue.enqueue(job_id)
    except Exception as exc:
        # Nobody will pick the job up; close it instead of leaving it processing.
        try:
            jobs.fail(job_id, f"worker queue unavailable: {exc}")
        except Exception:
            logger.exception("Could not mark job %s failed after enqueue error", job_id)
        raise
    return job


__all__ = ["AnalysisQueue", "start_analysis_job"]
