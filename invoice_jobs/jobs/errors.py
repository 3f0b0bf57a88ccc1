"""Error taxonomy for the job lifecycle client."""

from typing import Any, Dict, Optional


class JobClientError(Exception):
    """Base error carrying a human readable diagnostic."""

    def __init__(
        self,
        error: Any,
        stage: Optional[str] = None,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(str(error))
        self.error = str(error)
        self.stage = stage
        self.status_code = status_code
        self.extra = extra or {}


class RemoteCallError(JobClientError):
    """A capability call failed in transport or was rejected by the service."""


class CreationError(JobClientError):
    """The job could not be started. Resubmit to retry."""


class TransientFetchError(JobClientError):
    """A status poll failed. Recorded next to the last good snapshot, retried on the next interval."""


class CaptchaError(JobClientError):
    """Captcha resolution was rejected or failed; the job keeps waiting."""


class CaptchaNotPendingError(CaptchaError):
    """resolve_captcha was called while the job is not waiting for one."""


class NoTrackedJobError(JobClientError):
    """There is no job identifier to observe."""


class JobFailed(JobClientError):
    """The remote side reported the job as failed."""

    def __init__(self, job_id: str, error: Optional[str]):
        super().__init__(error or "job failed", stage="job", extra={"job_id": job_id})
        self.job_id = job_id
