from __future__ import annotations

import asyncio

import pytest

from blueprint_ai.services.analysis_jobs import AnalysisJobSnapshot, JobStatus
from blueprint_ai.services.job_tracker import (
    JobLifecycleTracker,
    TrackerState,
    WatchOutcome,
)


def _job(status: JobStatus, job_id: str = "job-1") -> AnalysisJobSnapshot:
    return AnalysisJobSnapshot(
        id=job_id,
        user_id="user-1",
        name="hydraulic-press.png",
        image_key="blueprints/hydraulic-press.png",
        status=status,
    )


class ScriptedFetch:
    """Returns scripted statuses in order, repeating the last one."""

    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.calls = 0

    async def __call__(self, job_id: str) -> AnalysisJobSnapshot:
        self.calls += 1
        item = self.statuses[min(self.calls, len(self.statuses)) - 1]
        if isinstance(item, Exception):
            raise item
        return _job(item, job_id)


@pytest.mark.asyncio
async def test_stops_on_terminal_status_without_extra_poll():
    fetch = ScriptedFetch(JobStatus.PROCESSING, JobStatus.PROCESSING, JobStatus.COMPLETED)
    tracker = JobLifecycleTracker(fetch, interval=0.01, deadline=5)

    result = await tracker.watch("job-1", _job(JobStatus.PROCESSING))
    await asyncio.sleep(0.05)

    assert result.outcome is WatchOutcome.COMPLETED
    assert result.polls == 3
    assert fetch.calls == 3
    assert tracker.state is TrackerState.STOPPED
    assert tracker.job.status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_status_is_terminal():
    fetch = ScriptedFetch(JobStatus.FAILED)
    tracker = JobLifecycleTracker(fetch, interval=0.01, deadline=5)

    result = await tracker.watch("job-1", _job(JobStatus.PROCESSING))

    assert result.outcome is WatchOutcome.FAILED
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_deadline_stops_with_last_known_status():
    fetch = ScriptedFetch(JobStatus.PROCESSING)
    tracker = JobLifecycleTracker(fetch, interval=0.01, deadline=0.1)

    result = await tracker.watch("job-1", _job(JobStatus.PROCESSING))
    calls = fetch.calls
    await asyncio.sleep(0.05)

    assert result.outcome is WatchOutcome.TIMED_OUT
    assert result.last_status is JobStatus.PROCESSING
    assert result.polls >= 1
    assert fetch.calls == calls
    assert tracker.state is TrackerState.STOPPED


@pytest.mark.asyncio
async def test_fetch_errors_are_retried_on_next_tick(caplog):
    fetch = ScriptedFetch(ConnectionError("store unavailable"), JobStatus.COMPLETED)
    tracker = JobLifecycleTracker(fetch, interval=0.01, deadline=5)

    result = await tracker.watch("job-1", _job(JobStatus.PROCESSING))

    assert result.outcome is WatchOutcome.COMPLETED
    assert result.polls == 2
    assert "store unavailable" in caplog.text


@pytest.mark.asyncio
async def test_fetch_errors_do_not_extend_deadline():
    fetch = ScriptedFetch(ConnectionError("boom"))
    tracker = JobLifecycleTracker(fetch, interval=0.01, deadline=0.1)

    result = await asyncio.wait_for(tracker.watch("job-1", _job(JobStatus.PROCESSING)), 1)

    assert result.outcome is WatchOutcome.TIMED_OUT
    assert result.last_status is JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_stale_status_is_ignored():
    seen = []
    fetch = ScriptedFetch(JobStatus.UPLOADED, JobStatus.COMPLETED)
    tracker = JobLifecycleTracker(
        fetch, interval=0.01, deadline=5, on_update=lambda job: seen.append(job.status)
    )

    result = await tracker.watch("job-1", _job(JobStatus.PROCESSING))

    assert result.outcome is WatchOutcome.COMPLETED
    assert seen == [JobStatus.COMPLETED]


@pytest.mark.asyncio
async def test_uploaded_job_is_watched_until_terminal():
    fetch = ScriptedFetch(JobStatus.PROCESSING, JobStatus.COMPLETED)
    tracker = JobLifecycleTracker(fetch, interval=0.01, deadline=5)

    result = await tracker.watch("job-1", _job(JobStatus.UPLOADED))

    assert result.outcome is WatchOutcome.COMPLETED
    assert result.polls == 2


@pytest.mark.asyncio
async def test_terminal_initial_snapshot_does_not_poll():
    fetch = ScriptedFetch(JobStatus.COMPLETED)
    tracker = JobLifecycleTracker(fetch, interval=0.01, deadline=5)

    tracker.start("job-1", _job(JobStatus.COMPLETED))
    result = await tracker.wait()

    assert tracker.state is TrackerState.STOPPED
    assert result.outcome is WatchOutcome.COMPLETED
    assert result.polls == 0
    assert fetch.calls == 0


@pytest.mark.asyncio
async def test_manual_refresh_observes_terminal_status():
    fetch = ScriptedFetch(JobStatus.COMPLETED)
    tracker = JobLifecycleTracker(fetch, interval=10, deadline=30)

    tracker.start("job-1", _job(JobStatus.PROCESSING))
    assert tracker.state is TrackerState.WATCHING
    job = await tracker.manual_refresh()
    result = await asyncio.wait_for(tracker.wait(), 1)

    assert job.status is JobStatus.COMPLETED
    assert result.outcome is WatchOutcome.COMPLETED
    assert result.polls == 0


@pytest.mark.asyncio
async def test_manual_refresh_keeps_deadline():
    fetch = ScriptedFetch(JobStatus.PROCESSING)
    tracker = JobLifecycleTracker(fetch, interval=10, deadline=0.3)
    loop = asyncio.get_running_loop()

    started = loop.time()
    tracker.start("job-1", _job(JobStatus.PROCESSING))
    await asyncio.sleep(0.15)
    await tracker.manual_refresh()
    result = await tracker.wait()

    assert result.outcome is WatchOutcome.TIMED_OUT
    assert result.polls == 0
    assert fetch.calls == 1
    assert loop.time() - started < 0.45


@pytest.mark.asyncio
async def test_manual_refresh_propagates_errors():
    fetch = ScriptedFetch(ConnectionError("offline"))
    tracker = JobLifecycleTracker(fetch, interval=10, deadline=30)
    tracker.start("job-1", _job(JobStatus.PROCESSING))

    with pytest.raises(ConnectionError):
        await tracker.manual_refresh()
    assert tracker.job.status is JobStatus.PROCESSING
    tracker.stop()


@pytest.mark.asyncio
async def test_stop_discards_in_flight_poll():
    called = asyncio.Event()
    release = asyncio.Event()

    async def fetch(job_id):
        called.set()
        await release.wait()
        return _job(JobStatus.COMPLETED, job_id)

    tracker = JobLifecycleTracker(fetch, interval=0.01, deadline=5)
    tracker.start("job-1", _job(JobStatus.PROCESSING))
    await called.wait()

    tracker.stop()
    tracker.stop()
    release.set()
    await asyncio.sleep(0.02)

    result = await tracker.wait()
    assert result.outcome is WatchOutcome.CANCELLED
    assert tracker.state is TrackerState.STOPPED
    assert tracker.job.status is JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_stop_discards_in_flight_manual_refresh():
    release = asyncio.Event()

    async def fetch(job_id):
        await release.wait()
        return _job(JobStatus.COMPLETED, job_id)

    tracker = JobLifecycleTracker(fetch, interval=10, deadline=30)
    tracker.start("job-1", _job(JobStatus.PROCESSING))
    refresh = asyncio.create_task(tracker.manual_refresh())
    await asyncio.sleep(0)

    tracker.stop()
    release.set()
    await refresh

    assert tracker.job.status is JobStatus.PROCESSING
    assert (await tracker.wait()).outcome is WatchOutcome.CANCELLED


@pytest.mark.asyncio
async def test_response_for_previous_job_does_not_leak_into_new_watch():
    release = asyncio.Event()

    async def fetch(job_id):
        if job_id == "job-1":
            await release.wait()
            return _job(JobStatus.COMPLETED, job_id)
        return _job(JobStatus.PROCESSING, job_id)

    tracker = JobLifecycleTracker(fetch, interval=10, deadline=30)
    tracker.start("job-1", _job(JobStatus.PROCESSING))
    refresh = asyncio.create_task(tracker.manual_refresh())
    await asyncio.sleep(0)

    tracker.start("job-2", _job(JobStatus.PROCESSING, "job-2"))
    release.set()
    await refresh

    assert tracker.job_id == "job-2"
    assert tracker.job.id == "job-2"
    assert tracker.job.status is JobStatus.PROCESSING
    assert tracker.state is TrackerState.WATCHING
    tracker.stop()


def test_idle_before_start():
    tracker = JobLifecycleTracker(ScriptedFetch(JobStatus.COMPLETED), interval=1, deadline=2)
    assert tracker.state is TrackerState.IDLE
    assert tracker.job is None
    tracker.stop()
    assert tracker.state is TrackerState.IDLE
