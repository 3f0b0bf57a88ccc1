"""Timer-driven status polling for a single tracked job.

One asyncio task per observed job. The task awaits every fetch before it
sleeps for the next interval, so there is never more than one status request
in flight and snapshots arrive in the order their fetches were issued.
"""

import asyncio
import logging
from typing import Callable, Optional

from invoice_jobs.jobs.capabilities import StatusFetcher
from invoice_jobs.jobs.errors import JobClientError, TransientFetchError
from invoice_jobs.jobs.models import CaptchaChallenge, JobPhase, JobSnapshot

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[str, JobSnapshot], None]
FetchErrorCallback = Callable[[str, TransientFetchError], None]
SkippedCallback = Callable[[str], None]


def should_keep_polling(snapshot: JobSnapshot) -> bool:
    """created/running keep the loop going; captcha and terminal phases stop it."""
    return snapshot.phase.is_processing


def is_answered_challenge(
    snapshot: JobSnapshot, answered: Optional[CaptchaChallenge]
) -> bool:
    """True while the service still reports a challenge that was already solved."""
    return (
        answered is not None
        and snapshot.phase is JobPhase.AWAITING_VERIFICATION
        and snapshot.verification_challenge == answered
    )


class PollingScheduler:
    """Owns the repeating fetch loop for one job at a time.

    Callbacks run synchronously inside the polling task. Once ``stop()``
    returns, the task is gone and no callback fires again.
    """

    def __init__(
        self,
        fetcher: StatusFetcher,
        on_snapshot: SnapshotCallback,
        on_fetch_error: FetchErrorCallback,
        *,
        interval: float = 1.0,
        backoff_factor: float = 1.0,
        max_interval: Optional[float] = None,
        on_skipped_snapshot: Optional[SkippedCallback] = None,
    ):
        if interval <= 0:
            raise ValueError("poll interval must be positive")
        if backoff_factor < 1.0:
            raise ValueError("backoff factor must be >= 1.0")
        self._fetcher = fetcher
        self._on_snapshot = on_snapshot
        self._on_fetch_error = on_fetch_error
        self._on_skipped_snapshot = on_skipped_snapshot
        self.interval = interval
        self.backoff_factor = backoff_factor
        self.max_interval = max(max_interval or interval, interval)
        self._task: Optional[asyncio.Task] = None
        self._job_id: Optional[str] = None
        self._active = False

    @property
    def job_id(self) -> Optional[str]:
        return self._job_id

    @property
    def is_running(self) -> bool:
        """Whether another fetch is scheduled or in flight."""
        return self._active

    def delay_after(self, consecutive_failures: int) -> float:
        """Seconds to wait before the next fetch."""
        if consecutive_failures <= 0 or self.backoff_factor == 1.0:
            return self.interval
        delay = self.interval * self.backoff_factor ** consecutive_failures
        return min(delay, self.max_interval)

    async def start(
        self, job_id: str, *, answered_challenge: Optional[CaptchaChallenge] = None
    ) -> None:
        """(Re)start polling ``job_id`` with an immediate first fetch.

        ``answered_challenge`` is the captcha that was just solved; snapshots
        still showing it are skipped until the service moves on.
        """
        await self.stop()
        self._job_id = job_id
        self._active = True
        self._task = asyncio.create_task(self._poll_loop(job_id, answered_challenge))

    async def stop(self) -> None:
        """Cancel the loop and any fetch in flight. Waits for the task to finish."""
        self._active = False
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        # Raises CancelledError only when the caller itself is cancelled.
        await asyncio.gather(task, return_exceptions=True)

    async def _poll_loop(
        self, job_id: str, answered_challenge: Optional[CaptchaChallenge]
    ) -> None:
        failures = 0
        while True:
            try:
                snapshot = await self._fetcher.get_job_status(job_id)
            except Exception as exc:
                failures += 1
                error = self._as_transient(exc)
                logger.warning(
                    "status fetch for job %s failed (%d in a row): %s",
                    job_id, failures, error.error,
                )
                self._on_fetch_error(job_id, error)
            else:
                failures = 0
                if is_answered_challenge(snapshot, answered_challenge):
                    logger.debug("job %s still reports the solved captcha", job_id)
                    if self._on_skipped_snapshot is not None:
                        self._on_skipped_snapshot(job_id)
                else:
                    answered_challenge = None
                    keep_polling = should_keep_polling(snapshot)
                    if not keep_polling:
                        self._active = False
                    logger.debug("job %s is %s", job_id, snapshot.phase.value)
                    self._on_snapshot(job_id, snapshot)
                    if not keep_polling:
                        return

            await asyncio.sleep(self.delay_after(failures))

    @staticmethod
    def _as_transient(exc: Exception) -> TransientFetchError:
        if isinstance(exc, JobClientError):
            return TransientFetchError(
                exc.error, stage="status", status_code=exc.status_code, extra=exc.extra
            )
        logger.exception("unexpected error from status fetcher")
        return TransientFetchError(f"{type(exc).__name__}: {exc}", stage="status")
