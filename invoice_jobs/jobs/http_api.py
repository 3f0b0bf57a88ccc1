"""HTTP implementation of the job capabilities on top of httpx."""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from invoice_jobs.config import settings
from invoice_jobs.jobs.capabilities import CaptchaSubmitter, JobCreator, StatusFetcher
from invoice_jobs.jobs.errors import RemoteCallError
from invoice_jobs.jobs.models import (
    CaptchaSubmission,
    CreateJobRequest,
    JobHandle,
    JobSnapshot,
)

logger = logging.getLogger(__name__)


def default_timeout(seconds: Optional[float] = None) -> httpx.Timeout:
    seconds = settings.request_timeout_seconds if seconds is None else seconds
    return httpx.Timeout(seconds, connect=min(seconds, 10.0))


class InvoiceJobsAPI(JobCreator, StatusFetcher, CaptchaSubmitter):
    """Client for the ``/invoice-jobs`` endpoints.

    Makes exactly one request per call. Timeouts come from the httpx client;
    retries are left to the polling scheduler or the caller.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[httpx.Timeout] = None,
    ):
        if client is None:
            client = httpx.AsyncClient(
                base_url=base_url or settings.api_base_url,
                timeout=timeout or default_timeout(),
            )
            self._owns_client = True
        else:
            self._owns_client = False
        self._client = client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "InvoiceJobsAPI":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def create_job(self, request: CreateJobRequest) -> JobHandle:
        response = await self._request(
            "create", "POST", "/invoice-jobs",
            json=request.model_dump(by_alias=True),
        )
        handle = self._parse("create", response, JobHandle)
        logger.info("created job %s", handle.job_id)
        return handle

    async def get_job_status(self, job_id: str) -> JobSnapshot:
        response = await self._request("status", "GET", f"/invoice-jobs/{quote(job_id, safe='')}")
        return self._parse("status", response, JobSnapshot)

    async def submit_captcha(self, job_id: str, solution: str) -> None:
        await self._request(
            "captcha", "POST", f"/invoice-jobs/{quote(job_id, safe='')}/captcha",
            json=CaptchaSubmission(solution=solution).model_dump(),
        )
        logger.info("submitted captcha solution for job %s", job_id)

    async def _request(self, stage: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteCallError(
                f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
                stage=stage,
            ) from exc

        if response.is_error:
            raise RemoteCallError(
                _error_message(response),
                stage=stage,
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _parse(stage: str, response: httpx.Response, model):
        # JSONDecodeError and pydantic ValidationError are both ValueErrors
        try:
            return model.model_validate(response.json())
        except ValueError as exc:
            raise RemoteCallError(
                f"unexpected response body: {exc}",
                stage=stage,
                status_code=response.status_code,
            ) from exc


def _error_message(response: httpx.Response) -> str:
    body = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("detail"):
        return str(payload["detail"])
    return body or f"HTTP error! status: {response.status_code}"
