"""In-process job manager backing the reference invoice job service.

Each job runs its extraction worker in its own asyncio task. When the worker
hits a captcha it awaits ``AsyncCaptchaSolver.solve``, which parks the job in
``waiting_captcha`` until a solution is submitted over the API.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from invoice_jobs.config import settings
from invoice_jobs.jobs.models import CaptchaChallenge, JobPhase, JobSnapshot

logger = logging.getLogger(__name__)


class JobNotFoundError(KeyError):
    pass


class JobNotWaitingError(RuntimeError):
    pass


class SolverNotListeningError(RuntimeError):
    pass


class JobRecord(BaseModel):
    """Server-side state of one job."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    access_key: str
    status: JobPhase = JobPhase.CREATED
    result: Optional[Any] = None
    error: Optional[str] = None
    captcha: Optional[CaptchaChallenge] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    created_monotonic: float = Field(default_factory=time.monotonic, exclude=True)

    _solution: Optional[asyncio.Future] = PrivateAttr(default=None)

    def set_running(self) -> None:
        self.status = JobPhase.RUNNING
        self.captcha = None

    def set_waiting_captcha(self, challenge: CaptchaChallenge) -> "asyncio.Future[str]":
        self.status = JobPhase.AWAITING_VERIFICATION
        self.captcha = challenge
        self._solution = asyncio.get_running_loop().create_future()
        return self._solution

    def set_completed(self, result: Any) -> None:
        self.status = JobPhase.COMPLETED
        self.result = result
        self.captcha = None
        self._drop_solution()

    def set_failed(self, error: str) -> None:
        self.status = JobPhase.FAILED
        self.error = error
        self.captcha = None
        self._drop_solution()

    def offer_solution(self, solution: str) -> bool:
        """Hand the solution to a waiting solver. False if nobody is listening."""
        future = self._solution
        if future is None or future.done():
            return False
        future.set_result(solution)
        self._solution = None
        return True

    def _drop_solution(self) -> None:
        if self._solution is not None and not self._solution.done():
            self._solution.cancel()
        self._solution = None

    def to_snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            id=self.id,
            phase=self.status,
            result=self.result,
            error=self.error or None,
            verification_challenge=self.captcha,
            access_key=self.access_key,
            created_at=self.created_at,
        )


class AsyncCaptchaSolver:
    """Captcha solver handed to extraction workers; waits for a human over the API."""

    def __init__(self, job: JobRecord):
        self.job = job

    async def solve(self, challenge: CaptchaChallenge) -> str:
        future = self.job.set_waiting_captcha(challenge)
        logger.info("job %s waiting for captcha %s", self.job.id, challenge.id or "-")
        solution = await future
        self.job.set_running()
        return solution


ExtractionWorker = Callable[[str, AsyncCaptchaSolver], Awaitable[Any]]


class JobManager:
    """Registry of jobs plus the tasks that run them."""

    def __init__(
        self,
        worker_fn: ExtractionWorker,
        *,
        job_deadline: Optional[float] = None,
        job_ttl: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
    ):
        """
        worker_fn: async callable(access_key, solver) -> result payload
            Performs the extraction. Calls ``await solver.solve(challenge)``
            whenever the portal asks for a captcha.
        """
        self._worker_fn = worker_fn
        self._jobs: Dict[str, JobRecord] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._job_deadline = settings.job_deadline_seconds if job_deadline is None else job_deadline
        self._job_ttl = settings.job_ttl_seconds if job_ttl is None else job_ttl
        self._cleanup_interval = (
            settings.cleanup_interval_seconds if cleanup_interval is None else cleanup_interval
        )
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False

    def __len__(self) -> int:
        return len(self._jobs)

    def create_job(self, access_key: str) -> JobRecord:
        return self.add_job(JobRecord(access_key=access_key))

    def add_job(self, job: JobRecord) -> JobRecord:
        """Register ``job`` and start its worker."""
        self._jobs[job.id] = job
        task = asyncio.create_task(self._run_job(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def submit_captcha(self, job_id: str, solution: str) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status is not JobPhase.AWAITING_VERIFICATION:
            raise JobNotWaitingError("Job is not waiting for captcha")
        if not job.offer_solution(solution):
            raise SolverNotListeningError("Failed to submit solution (scraper not listening)")

    def cleanup_expired(self, max_age: Optional[float] = None) -> int:
        """Forget jobs older than ``max_age`` seconds. Returns how many were removed."""
        max_age = self._job_ttl if max_age is None else max_age
        now = time.monotonic()
        expired = [
            job_id for job_id, job in self._jobs.items()
            if now - job.created_monotonic > max_age
        ]
        for job_id in expired:
            del self._jobs[job_id]
        return len(expired)

    async def start(self) -> None:
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks)
        if self._cleanup_task:
            tasks.append(self._cleanup_task)
            self._cleanup_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _cleanup_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._cleanup_interval)
            removed = self.cleanup_expired()
            if removed:
                logger.info("removed %d expired job(s)", removed)

    async def _run_job(self, job: JobRecord) -> None:
        job.set_running()
        solver = AsyncCaptchaSolver(job)
        try:
            result = await asyncio.wait_for(
                self._worker_fn(job.access_key, solver), timeout=self._job_deadline
            )
        except asyncio.TimeoutError:
            job.set_failed(f"job exceeded deadline of {self._job_deadline:g}s")
        except asyncio.CancelledError:
            job.set_failed("job cancelled")
            raise
        except Exception as e:
            logger.warning("job %s failed: %s", job.id, e)
            job.set_failed(str(e) or type(e).__name__)
        else:
            job.set_completed(result)
