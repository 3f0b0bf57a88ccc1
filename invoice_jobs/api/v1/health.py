"""Health check endpoint."""

from fastapi import APIRouter

from invoice_jobs.api.v1 import jobs as jobs_api

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health and number of tracked jobs."""
    manager = jobs_api.current_manager()
    return {
        "status": "healthy",
        "jobs": len(manager) if manager is not None else 0,
    }
