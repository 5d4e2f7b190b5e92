"""Tests for rynkclient.jobs.JobPoller."""

import pytest

from rynkclient.exceptions import CreditExhausted, JobFailed, JobTimeout
from rynkclient.jobs import JobPoller


class FakeSleep:

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class TestJobPoller:

    @pytest.mark.asyncio
    async def test_run_until_complete(self, backend, make_api):
        backend.add("POST", "/guest/files/process", {"jobId": "j1"})
        backend.add("GET", "/guest/jobs/j1", {"status": "queued"})
        backend.add("GET", "/guest/jobs/j1", {"status": "processing"})
        backend.add("GET", "/guest/jobs/j1", {"status": "complete", "result": {"pages": 3}})
        sleep = FakeSleep()
        poller = JobPoller(make_api(), interval=0.5, max_attempts=5, sleep=sleep)

        job = await poller.run("/files/process", {"fileId": "f1"})

        assert job.id == "j1"
        assert job.result == {"pages": 3}
        assert sleep.calls == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_nested_job_payload(self, backend, make_api):
        backend.add("GET", "/guest/jobs/j1", {"job": {"id": "j1", "status": "complete"}})
        poller = JobPoller(make_api(), sleep=FakeSleep())
        assert (await poller.wait("j1")).status == "complete"

    @pytest.mark.asyncio
    async def test_error_status(self, backend, make_api):
        backend.add("GET", "/guest/jobs/j1", {"status": "error", "error": "bad file"})
        poller = JobPoller(make_api(), sleep=FakeSleep())
        with pytest.raises(JobFailed, match="bad file"):
            await poller.wait("j1")

    @pytest.mark.asyncio
    async def test_timeout(self, backend, make_api):
        backend.add("GET", "/guest/jobs/j1", {"status": "processing"})
        sleep = FakeSleep()
        poller = JobPoller(make_api(), max_attempts=3, sleep=sleep)
        with pytest.raises(JobTimeout) as exc_info:
            await poller.wait("j1")
        assert exc_info.value.attempts == 3
        assert len(sleep.calls) == 2
        assert len(backend.requests) == 3

    @pytest.mark.asyncio
    async def test_failed_poll_counts_as_attempt(self, backend, make_api):
        backend.add("GET", "/guest/jobs/j1", {"message": "busy"}, status=503)
        backend.add("GET", "/guest/jobs/j1", {"status": "complete"})
        poller = JobPoller(make_api(), max_attempts=3, sleep=FakeSleep())
        assert (await poller.wait("j1")).status == "complete"

    @pytest.mark.asyncio
    async def test_credit_exhaustion_is_not_retried(self, backend, make_api):
        backend.add("GET", "/guest/jobs/j1", {"error": "out of credits"}, status=402)
        poller = JobPoller(make_api(), max_attempts=3, sleep=FakeSleep())
        with pytest.raises(CreditExhausted):
            await poller.wait("j1")
        assert len(backend.requests) == 1

    @pytest.mark.asyncio
    async def test_submit_without_job_id(self, backend, make_api):
        from rynkclient.exceptions import NetworkFailure

        backend.add("POST", "/guest/files/process", {})
        poller = JobPoller(make_api(), sleep=FakeSleep())
        with pytest.raises(NetworkFailure):
            await poller.submit("/files/process", {})

    def test_max_attempts_must_be_positive(self, make_api):
        with pytest.raises(ValueError):
            JobPoller(make_api(), max_attempts=0)
