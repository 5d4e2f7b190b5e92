"""Polling for long-running server jobs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .client import ApiClient
from .config import JOB_MAX_ATTEMPTS, JOB_POLL_INTERVAL
from .exceptions import CreditExhausted, JobFailed, JobTimeout, NetworkFailure
from .models import Job
from .parser import parse_job

logger = logging.getLogger(__name__)


class JobPoller:
    """Submit a job and poll ``<family>/jobs/{id}`` until it settles.

    This is the only retrying loop in the client: failed polls count against
    ``max_attempts`` and are otherwise ignored, except credit exhaustion.
    """

    def __init__(
        self,
        api: ApiClient,
        interval: float = JOB_POLL_INTERVAL,
        max_attempts: int = JOB_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.api = api
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    async def submit(self, endpoint: str, payload: dict) -> str:
        response = await self.api.post(self.api.path(endpoint), payload)
        job_id = response.get("jobId") or (response.get("job") or {}).get("id")
        if not job_id:
            raise NetworkFailure(None, f"{endpoint} returned no job id")
        logger.debug("Submitted job %s", job_id)
        return job_id

    async def wait(self, job_id: str) -> Job:
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.api.get(self.api.path(f"/jobs/{job_id}"))
            except CreditExhausted:
                raise
            except NetworkFailure as exc:
                logger.warning("Poll %d/%d for job %s failed: %s", attempt, self.max_attempts, job_id, exc)
            else:
                data = response.get("job", response)
                job = parse_job({"id": job_id, **data} if isinstance(data, dict) else data)
                if job is not None:
                    if job.status == "complete":
                        return job
                    if job.status == "error":
                        raise JobFailed(job_id, job.error)
                    logger.debug("Job %s is %s", job_id, job.status)

            if attempt < self.max_attempts:
                await self._sleep(self.interval)

        raise JobTimeout(job_id, self.max_attempts)

    async def run(self, endpoint: str, payload: dict) -> Job:
        return await self.wait(await self.submit(endpoint, payload))
