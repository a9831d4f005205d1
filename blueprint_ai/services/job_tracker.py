"""Watch an analysis job until it reaches a terminal status or a deadline.

One watch session is one asyncio task. The poll interval and the overall
deadline both live inside that task, so every exit path (terminal status,
deadline, ``stop()``) releases them together. A session carries its own
cancellation flag; results that arrive for a cancelled or superseded session
are dropped.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from blueprint_ai.config import Settings
from blueprint_ai.metrics import job_poll_errors_total, job_watch_seconds, job_watch_total
from blueprint_ai.services.analysis_jobs import AnalysisJobSnapshot, JobStatus

logger = logging.getLogger(__name__)

JobFetcher = Callable[[str], Awaitable[AnalysisJobSnapshot]]


class TrackerState(str, enum.Enum):
    IDLE = "idle"
    WATCHING = "watching"
    STOPPED = "stopped"


class WatchOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    # Deadline hit while the job was still in flight; it may finish later.
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WatchResult:
    job_id: str
    outcome: WatchOutcome
    job: AnalysisJobSnapshot | None
    polls: int

    @property
    def last_status(self) -> JobStatus | None:
        return self.job.status if self.job is not None else None


def _terminal_outcome(status: JobStatus) -> WatchOutcome:
    return WatchOutcome.COMPLETED if status is JobStatus.COMPLETED else WatchOutcome.FAILED


class _WatchSession:
    def __init__(
        self,
        job_id: str,
        job: AnalysisJobSnapshot | None,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.job_id = job_id
        self.job = job
        self.polls = 0
        self.cancelled = False
        self.wakeup = asyncio.Event()
        self.result: asyncio.Future[WatchResult] = loop.create_future()
        self.started = loop.time()
        self.task: asyncio.Task | None = None


class JobLifecycleTracker:
    """Poll one job at a time; starting a new watch cancels the previous one."""

    def __init__(
        self,
        fetch_job: JobFetcher,
        *,
        interval: float | None = None,
        deadline: float | None = None,
        on_update: Callable[[AnalysisJobSnapshot], None] | None = None,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or Settings()
        self._fetch_job = fetch_job
        self._interval = interval if interval is not None else cfg.job_poll_interval_s
        self._deadline = deadline if deadline is not None else cfg.job_poll_deadline_s
        self._on_update = on_update
        self._session: _WatchSession | None = None

    @property
    def state(self) -> TrackerState:
        session = self._session
        if session is None:
            return TrackerState.IDLE
        return TrackerState.STOPPED if session.result.done() else TrackerState.WATCHING

    @property
    def job_id(self) -> str | None:
        return self._session.job_id if self._session else None

    @property
    def job(self) -> AnalysisJobSnapshot | None:
        """Last observed snapshot of the current job."""
        return self._session.job if self._session else None

    def start(self, job_id: str, initial: AnalysisJobSnapshot | None = None) -> None:
        """Begin watching ``job_id``; must be called from a running event loop."""
        self.stop()
        loop = asyncio.get_running_loop()
        session = _WatchSession(job_id, initial, loop)
        self._session = session
        if initial is not None and initial.status.terminal:
            self._finish(session, _terminal_outcome(initial.status))
            return
        logger.info("Watching job %s", job_id)
        session.task = loop.create_task(self._run(session), name=f"job-watch-{job_id}")

    async def wait(self) -> WatchResult:
        if self._session is None:
            raise RuntimeError("tracker was never started")
        return await asyncio.shield(self._session.result)

    async def watch(
        self, job_id: str, initial: AnalysisJobSnapshot | None = None
    ) -> WatchResult:
        self.start(job_id, initial)
        return await self.wait()

    def stop(self) -> None:
        """Cancel the current session. Safe to call repeatedly."""
        session = self._session
        if session is None or session.cancelled:
            return
        session.cancelled = True
        session.wakeup.set()
        self._finish(session, WatchOutcome.CANCELLED)
        if session.task is not None and not session.task.done():
            session.task.cancel()

    async def manual_refresh(self) -> AnalysisJobSnapshot | None:
        """Fetch the current job once, outside the poll cadence."""
        session = self._session
        if session is None or session.cancelled:
            return None
        try:
            job = await self._fetch_job(session.job_id)
        except Exception as exc:
            logger.warning("Manual refresh of job %s failed: %s", session.job_id, exc)
            raise
        self._observe(session, job)
        return session.job

    def _observe(self, session: _WatchSession, job: AnalysisJobSnapshot) -> bool:
        if session.cancelled or session is not self._session:
            logger.debug("Dropping response for inactive watch of job %s", session.job_id)
            return False
        if job.id != session.job_id:
            return False
        current = session.job
        if current is not None and job.status.rank < current.status.rank:
            logger.debug(
                "Ignoring stale status %s for job %s (observed %s)",
                job.status.value,
                job.id,
                current.status.value,
            )
            return False
        session.job = job
        if self._on_update is not None:
            try:
                self._on_update(job)
            except Exception:
                logger.exception("Job update listener failed for job %s", job.id)
        if job.status.terminal:
            session.wakeup.set()
        return True

    async def _poll(self, session: _WatchSession) -> None:
        session.polls += 1
        try:
            job = await self._fetch_job(session.job_id)
        except Exception as exc:
            job_poll_errors_total.inc()
            logger.warning("Polling job %s failed: %s", session.job_id, exc)
            return
        self._observe(session, job)

    async def _run(self, session: _WatchSession) -> None:
        loop = asyncio.get_running_loop()
        deadline_at = session.started + self._deadline
        try:
            while not session.cancelled:
                if session.job is not None and session.job.status.terminal:
                    self._finish(session, _terminal_outcome(session.job.status))
                    return
                remaining = deadline_at - loop.time()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(
                        session.wakeup.wait(), timeout=min(self._interval, remaining)
                    )
                except asyncio.TimeoutError:
                    pass
                else:
                    session.wakeup.clear()
                    continue
                # The wait ran up to the deadline; a tick landing on it does not poll.
                if remaining <= self._interval:
                    break
                await self._poll(session)
            else:
                return
            self._finish(session, WatchOutcome.TIMED_OUT)
        except asyncio.CancelledError:
            self._finish(session, WatchOutcome.CANCELLED)
            raise

    def _finish(self, session: _WatchSession, outcome: WatchOutcome) -> None:
        if session.result.done():
            return
        result = WatchResult(session.job_id, outcome, session.job, session.polls)
        session.result.set_result(result)
        job_watch_total.labels(outcome=outcome.value).inc()
        job_watch_seconds.observe(session.result.get_loop().time() - session.started)
        if outcome is WatchOutcome.TIMED_OUT:
            logger.info(
                "Stopped watching job %s after %ss, last known status %s",
                session.job_id,
                self._deadline,
                result.last_status.value if result.last_status else "unknown",
                extra={"job_id": session.job_id, "outcome": outcome.value},
            )
        else:
            logger.info(
                "Watch of job %s ended: %s",
                session.job_id,
                outcome.value,
                extra={"job_id": session.job_id, "outcome": outcome.value},
            )


__all__ = [
    "JobFetcher",
    "TrackerState",
    "WatchOutcome",
    "WatchResult",
    "JobLifecycleTracker",
]
