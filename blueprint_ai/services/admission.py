"""Admission gate: check quota, start the job, then charge the ledger.

The ledger is charged only after the job has been durably handed to the
worker. A job that fails to start leaves the ledger untouched, so retrying
a failed start never consumes quota.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import weakref
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from blueprint_ai.metrics import (
    analysis_admitted_total,
    analysis_charge_fail_total,
    analysis_start_fail_total,
    quota_reject_total,
)
from blueprint_ai.services.analysis_jobs import AnalysisJobSnapshot
from blueprint_ai.services.job_tracker import JobLifecycleTracker, TrackerState
from blueprint_ai.services.usage_ledger import Eligibility, UsageLedger, UsageRecord

logger = logging.getLogger(__name__)

JobStarter = Callable[[str], Awaitable[AnalysisJobSnapshot]]


class RejectReason(str, enum.Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_AUTHENTICATED = "not_authenticated"


class JobStartError(Exception):
    """The job could not be handed to the worker; nothing was charged."""

    def __init__(self, job_id: str):
        super().__init__(f"failed to start analysis job {job_id}")
        self.job_id = job_id


class UsageChargeError(Exception):
    """The job started but the ledger charge was not applied."""

    def __init__(self, job_id: str, user_id: str):
        super().__init__(f"job {job_id} started but usage for {user_id} was not recorded")
        self.job_id = job_id
        self.user_id = user_id


@dataclass(frozen=True)
class AdmissionResult:
    accepted: bool
    reason: RejectReason | None = None
    eligibility: Eligibility | None = None
    job: AnalysisJobSnapshot | None = None
    usage: UsageRecord | None = None


class AdmissionGate:
    def __init__(
        self,
        ledger: UsageLedger,
        start_job: JobStarter,
        *,
        paywall_enabled: bool = True,
        tracker_factory: Callable[[], JobLifecycleTracker] | None = None,
    ) -> None:
        self._ledger = ledger
        self._start_job = start_job
        self._paywall_enabled = paywall_enabled
        self._tracker_factory = tracker_factory
        # One watch session per admitted job, keyed by job id.
        self._trackers: dict[str, JobLifecycleTracker] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    def tracker_for(self, job_id: str) -> JobLifecycleTracker | None:
        return self._trackers.get(job_id)

    def _watch(self, job: AnalysisJobSnapshot) -> None:
        self._trackers = {
            jid: t
            for jid, t in self._trackers.items()
            if t.state is TrackerState.WATCHING
        }
        tracker = self._tracker_factory()
        tracker.start(job.id, job)
        self._trackers[job.id] = tracker

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def start_analysis(
        self, user_id: str | None, job_id: str, cost: Decimal | None = None
    ) -> AdmissionResult:
        if not user_id:
            return AdmissionResult(accepted=False, reason=RejectReason.NOT_AUTHENTICATED)
        # Invalid costs are refused before any job starts.
        cost = self._ledger.normalize_cost(cost)

        # Check, start and charge run back to back per user so two requests
        # cannot both spend the last remaining analysis.
        async with self._user_lock(user_id):
            eligibility = await asyncio.to_thread(self._ledger.can_analyze, user_id)
            if not eligibility.can_analyze and self._paywall_enabled:
                quota_reject_total.inc()
                logger.info(
                    "Quota exceeded for user %s (tier=%s, limit=%s)",
                    user_id,
                    eligibility.tier.value,
                    eligibility.limit,
                )
                return AdmissionResult(
                    accepted=False,
                    reason=RejectReason.QUOTA_EXCEEDED,
                    eligibility=eligibility,
                )

            try:
                job = await self._start_job(job_id)
            except Exception as exc:
                analysis_start_fail_total.inc()
                logger.exception(
                    "Failed to start analysis job %s", job_id, extra={"job_id": job_id}
                )
                raise JobStartError(job_id) from exc

            try:
                usage = await asyncio.to_thread(
                    self._ledger.record_analysis, user_id, cost
                )
            except SQLAlchemyError as exc:
                analysis_charge_fail_total.inc()
                logger.exception(
                    "Failed to record analysis for job %s",
                    job.id,
                    extra={"job_id": job.id, "user_id": user_id},
                )
                raise UsageChargeError(job.id, user_id) from exc

        analysis_admitted_total.inc()
        if self._tracker_factory is not None:
            self._watch(job)
        return AdmissionResult(
            accepted=True, eligibility=eligibility, job=job, usage=usage
        )


__all__ = [
    "RejectReason",
    "JobStartError",
    "UsageChargeError",
    "AdmissionResult",
    "AdmissionGate",
    "JobStarter",
]
