"""Invoice job API: create jobs, poll status, submit captcha solutions."""

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from invoice_jobs.jobs.manager import (
    JobManager,
    JobNotFoundError,
    JobNotWaitingError,
    SolverNotListeningError,
)
from invoice_jobs.jobs.models import CaptchaSubmission, JobHandle

router = APIRouter()

# Set by create_app()
_manager = None


def set_manager(manager: JobManager):
    global _manager
    _manager = manager


def current_manager() -> Optional[JobManager]:
    return _manager


def _get_manager() -> JobManager:
    if _manager is None:
        raise HTTPException(status_code=503, detail="Job manager not initialized")
    return _manager


class CreateJobBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_key: str = Field(default="", alias="accessKey")


@router.post("/invoice-jobs")
async def create_job(body: CreateJobBody):
    """Start an invoice extraction for an access key."""
    manager = _get_manager()
    if not body.access_key:
        raise HTTPException(status_code=400, detail="accessKey is required")

    job = manager.create_job(body.access_key)
    return JobHandle(job_id=job.id).model_dump(by_alias=True)


@router.get("/invoice-jobs/{job_id}")
async def get_job(job_id: str):
    """Current snapshot of a job."""
    job = _get_manager().get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_snapshot().model_dump(mode="json", by_alias=True, exclude_none=True)


@router.post("/invoice-jobs/{job_id}/captcha")
async def submit_captcha(job_id: str, body: CaptchaSubmission):
    """Deliver a captcha solution to a job waiting for one."""
    try:
        _get_manager().submit_captcha(job_id, body.solution)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobNotWaitingError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SolverNotListeningError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"ok": True}
