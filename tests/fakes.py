"""
Scripted capabilities and helpers shared by the client and scheduler tests.
"""

import asyncio
import base64
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from invoice_jobs.jobs.capabilities import CaptchaSubmitter, JobCreator, StatusFetcher
from invoice_jobs.jobs.models import (
    CaptchaChallenge,
    CreateJobRequest,
    JobHandle,
    JobPhase,
    JobSnapshot,
)

ScriptItem = Union[JobSnapshot, Exception]


def snap(job_id: str, phase: JobPhase, **payload: Any) -> JobSnapshot:
    return JobSnapshot(id=job_id, phase=phase, **payload)


def challenge(challenge_id: str, image: bytes = b"png") -> CaptchaChallenge:
    return CaptchaChallenge(
        id=challenge_id,
        image=base64.b64encode(image).decode(),
        content_type="image/png",
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


class ScriptedJobService(JobCreator, StatusFetcher, CaptchaSubmitter):
    """Plays back scripted status responses, one per fetch.

    The last scripted item repeats once the script is exhausted. Setting
    ``gate`` to an unset event holds every fetch in flight until it is set, and
    ``abort_delay`` makes a cancelled fetch take that long to unwind.
    """

    def __init__(self, job_ids: Optional[List[str]] = None):
        self.job_ids = list(job_ids or ["job-1"])
        self.scripts: Dict[str, List[ScriptItem]] = {}
        self.create_error: Optional[Exception] = None
        self.captcha_error: Optional[Exception] = None
        self.fetch_delay = 0.0
        self.abort_delay = 0.0
        self.gate: Optional[asyncio.Event] = None

        self.create_calls: List[CreateJobRequest] = []
        self.fetch_calls: List[str] = []
        self.captcha_calls: List[Tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, job_id: str, *items: ScriptItem) -> None:
        self.scripts.setdefault(job_id, []).extend(items)

    def fetch_count(self, job_id: str) -> int:
        return self.fetch_calls.count(job_id)

    async def create_job(self, request: CreateJobRequest) -> JobHandle:
        self.create_calls.append(request)
        await asyncio.sleep(0)
        if self.create_error is not None:
            raise self.create_error
        return JobHandle(job_id=self.job_ids.pop(0))

    async def get_job_status(self, job_id: str) -> JobSnapshot:
        self.fetch_calls.append(job_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.fetch_delay:
                await asyncio.sleep(self.fetch_delay)
            if self.gate is not None:
                await self.gate.wait()
            script = self.scripts[job_id]
            item = script.pop(0) if len(script) > 1 else script[0]
            if isinstance(item, Exception):
                raise item
            return item
        except asyncio.CancelledError:
            if self.abort_delay:
                await asyncio.sleep(self.abort_delay)
            raise
        finally:
            self.in_flight -= 1

    async def submit_captcha(self, job_id: str, solution: str) -> None:
        self.captcha_calls.append((job_id, solution))
        await asyncio.sleep(0)
        if self.captcha_error is not None:
            raise self.captcha_error
