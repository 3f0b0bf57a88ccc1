"""Capabilities the lifecycle client depends on but does not implement.

Every call is a coroutine. Cancelling the awaiting task abandons the call:
implementations must release what they hold and deliver nothing afterwards.
Failures are raised as ``RemoteCallError``. Implementations never retry.
"""

from abc import ABC, abstractmethod

from invoice_jobs.jobs.models import CreateJobRequest, JobHandle, JobSnapshot


class JobCreator(ABC):
    """Starts a remote job."""

    @abstractmethod
    async def create_job(self, request: CreateJobRequest) -> JobHandle:
        """Submit the job input. Returns the new job identifier."""
        ...


class StatusFetcher(ABC):
    """Reads the current state of a remote job."""

    @abstractmethod
    async def get_job_status(self, job_id: str) -> JobSnapshot:
        """Fetch a fresh snapshot of the job."""
        ...


class CaptchaSubmitter(ABC):
    """Delivers a captcha solution to a job waiting for one."""

    @abstractmethod
    async def submit_captcha(self, job_id: str, solution: str) -> None:
        """Submit the solution. Returns once the service acknowledged it."""
        ...
