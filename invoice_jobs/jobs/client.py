"""Job lifecycle client: create a job, follow it, answer its captcha."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from invoice_jobs.config import settings
from invoice_jobs.jobs.capabilities import CaptchaSubmitter, JobCreator, StatusFetcher
from invoice_jobs.jobs.errors import (
    CaptchaError,
    CaptchaNotPendingError,
    CreationError,
    JobClientError,
    JobFailed,
    NoTrackedJobError,
    TransientFetchError,
)
from invoice_jobs.jobs.models import (
    CaptchaChallenge,
    CreateJobRequest,
    JobHandle,
    JobPhase,
    JobSnapshot,
)
from invoice_jobs.jobs.scheduler import PollingScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobObservation:
    """What the caller sees: last good snapshot plus the latest poll failure."""

    job_id: Optional[str] = None
    snapshot: Optional[JobSnapshot] = None
    fetch_error: Optional[TransientFetchError] = None
    polling: bool = False

    @property
    def phase(self) -> Optional[JobPhase]:
        return self.snapshot.phase if self.snapshot else None

    @property
    def is_awaiting_verification(self) -> bool:
        return self.phase is JobPhase.AWAITING_VERIFICATION

    @property
    def is_processing(self) -> bool:
        return self.phase is not None and self.phase.is_processing

    @property
    def is_completed(self) -> bool:
        return self.phase is JobPhase.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.phase is JobPhase.FAILED

    @property
    def is_terminal(self) -> bool:
        return self.phase is not None and self.phase.is_terminal

    @property
    def is_unreachable(self) -> bool:
        """The last poll failed; the snapshot may be stale but polling goes on."""
        return self.fetch_error is not None

    @property
    def result(self) -> Any:
        return self.snapshot.result if self.snapshot else None

    @property
    def error(self) -> Optional[str]:
        return self.snapshot.error if self.snapshot else None

    @property
    def verification_challenge(self) -> Optional[CaptchaChallenge]:
        return self.snapshot.verification_challenge if self.snapshot else None

    def raise_for_failure(self) -> None:
        if self.is_failed:
            raise JobFailed(self.job_id or self.snapshot.id, self.error)


Listener = Callable[[JobObservation], None]


class JobLifecycleClient:
    """Tracks one remote job at a time.

    ``create``, ``resolve_captcha``, ``resume`` and ``cancel`` are serialized;
    snapshot updates come from the polling task and are applied in order.
    """

    def __init__(
        self,
        creator: JobCreator,
        fetcher: StatusFetcher,
        submitter: CaptchaSubmitter,
        *,
        poll_interval: Optional[float] = None,
        backoff_factor: Optional[float] = None,
        max_poll_interval: Optional[float] = None,
    ):
        self._creator = creator
        self._submitter = submitter
        self._scheduler = PollingScheduler(
            fetcher,
            self._apply_snapshot,
            self._record_fetch_error,
            interval=settings.poll_interval_seconds if poll_interval is None else poll_interval,
            backoff_factor=settings.poll_backoff_factor if backoff_factor is None else backoff_factor,
            max_interval=settings.poll_max_interval_seconds if max_poll_interval is None else max_poll_interval,
            on_skipped_snapshot=self._clear_fetch_error,
        )
        self._job_id: Optional[str] = None
        self._snapshot: Optional[JobSnapshot] = None
        self._fetch_error: Optional[TransientFetchError] = None
        self._lock = asyncio.Lock()
        self._changed = asyncio.Event()
        self._listeners: List[Listener] = []

    @classmethod
    def from_api(cls, api, **kwargs) -> "JobLifecycleClient":
        """Client whose three capabilities are one object (e.g. ``InvoiceJobsAPI``)."""
        return cls(api, api, api, **kwargs)

    async def __aenter__(self) -> "JobLifecycleClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.cancel()

    @property
    def job_id(self) -> Optional[str]:
        return self._job_id

    @property
    def snapshot(self) -> Optional[JobSnapshot]:
        return self._snapshot

    def observe(self) -> JobObservation:
        return JobObservation(
            job_id=self._job_id,
            snapshot=self._snapshot,
            fetch_error=self._fetch_error,
            polling=self._scheduler.is_running,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` on every state change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def create(self, request: CreateJobRequest) -> JobHandle:
        async with self._lock:
            await self._scheduler.stop()
            self._reset(None)
            self._notify()
            try:
                handle = await self._creator.create_job(request)
            except Exception as exc:
                logger.warning("job creation failed: %s", exc)
                raise _wrap(CreationError, exc, "create") from exc

            self._job_id = handle.job_id
            self._snapshot = JobSnapshot(id=handle.job_id, phase=JobPhase.CREATED)
            await self._scheduler.start(handle.job_id)
            self._notify()
            return handle

    async def resume(self, job_id: Optional[str] = None) -> JobHandle:
        """Observe the tracked job again, or switch to an existing ``job_id``."""
        async with self._lock:
            target = job_id or self._job_id
            if target is None:
                raise NoTrackedJobError("no job to resume", stage="resume")
            await self._scheduler.stop()
            if target != self._job_id:
                self._reset(target)
            self._fetch_error = None
            if self._snapshot is not None and self._snapshot.is_terminal:
                logger.info("job %s already finished as %s", target, self._snapshot.phase.value)
            else:
                await self._scheduler.start(target)
            self._notify()
            return JobHandle(job_id=target)

    async def resolve_captcha(self, solution: str) -> None:
        async with self._lock:
            snapshot = self._snapshot
            if self._job_id is None or snapshot is None or not snapshot.is_awaiting_verification:
                raise CaptchaNotPendingError("job is not waiting for a captcha", stage="captcha")
            if self._scheduler.is_running:
                raise CaptchaNotPendingError(
                    "a captcha solution is already being processed", stage="captcha"
                )

            await self._scheduler.stop()
            try:
                await self._submitter.submit_captcha(self._job_id, solution)
            except Exception as exc:
                logger.warning("captcha for job %s was not accepted: %s", self._job_id, exc)
                raise _wrap(CaptchaError, exc, "captcha") from exc

            await self._scheduler.start(
                self._job_id, answered_challenge=snapshot.verification_challenge
            )
            self._notify()

    async def cancel(self) -> None:
        """Stop observing. The remote job is left alone; ``resume`` picks it up again."""
        async with self._lock:
            await self._scheduler.stop()
            self._notify()

    async def wait_until_settled(self) -> JobObservation:
        """Wait until polling stops: finished, waiting for a captcha, or cancelled."""
        while True:
            self._changed.clear()
            observation = self.observe()
            if not observation.polling:
                return observation
            await self._changed.wait()

    def _reset(self, job_id: Optional[str]) -> None:
        self._job_id = job_id
        self._snapshot = None
        self._fetch_error = None

    def _apply_snapshot(self, job_id: str, snapshot: JobSnapshot) -> None:
        if job_id != self._job_id:
            logger.debug("dropping snapshot of abandoned job %s", job_id)
            return
        if self._snapshot is not None and self._snapshot.is_terminal:
            return
        self._snapshot = snapshot
        self._fetch_error = None
        self._notify()

    def _record_fetch_error(self, job_id: str, error: TransientFetchError) -> None:
        if job_id != self._job_id:
            return
        self._fetch_error = error
        self._notify()

    def _clear_fetch_error(self, job_id: str) -> None:
        if job_id != self._job_id or self._fetch_error is None:
            return
        self._fetch_error = None
        self._notify()

    def _notify(self) -> None:
        self._changed.set()
        observation = self.observe()
        for listener in list(self._listeners):
            try:
                listener(observation)
            except Exception:
                logger.exception("job listener failed")


def _wrap(error_cls, exc: Exception, stage: str) -> JobClientError:
    if isinstance(exc, JobClientError):
        return error_cls(exc.error, stage=stage, status_code=exc.status_code, extra=exc.extra)
    return error_cls(f"{type(exc).__name__}: {exc}", stage=stage)
