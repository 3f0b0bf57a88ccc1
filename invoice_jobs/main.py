"""Invoice job service - FastAPI application.

Reference implementation of the remote side the lifecycle client talks to.
The extraction itself is supplied by the caller as a worker function.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from invoice_jobs.config import settings
from invoice_jobs.api.v1.router import api_router
from invoice_jobs.api.v1.health import router as health_root_router
from invoice_jobs.api.v1 import jobs as jobs_api
from invoice_jobs.jobs.manager import ExtractionWorker, JobManager


def create_app(manager: JobManager) -> FastAPI:
    """Build the service around ``manager``.

    Routes are wired immediately; the lifespan only runs the cleanup loop
    and cancels running jobs on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        print("Starting invoice job service")
        print(f"Job deadline: {settings.job_deadline_seconds:g}s")
        print(f"Job TTL: {settings.job_ttl_seconds:g}s")
        await manager.start()

        yield

        print("Shutting down invoice job service")
        await manager.stop()

    jobs_api.set_manager(manager)

    app = FastAPI(
        title="Invoice Job Service",
        description="Invoice extraction jobs with human-in-the-loop captcha solving",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS for browser clients polling job status
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    app.include_router(health_root_router, tags=["health"])  # GET /health at root
    app.include_router(api_router)  # All /api/* endpoints
    return app


def build_app(worker_fn: ExtractionWorker) -> FastAPI:
    """Shortcut for ``create_app(JobManager(worker_fn))``."""
    return create_app(JobManager(worker_fn))
