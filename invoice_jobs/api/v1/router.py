"""Aggregate all API routers."""

from fastapi import APIRouter
from invoice_jobs.api.v1.jobs import router as jobs_router

api_router = APIRouter(prefix="/api")
api_router.include_router(jobs_router, tags=["invoice-jobs"])
