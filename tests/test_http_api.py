"""
Tests for the httpx capability adapter, against the reference FastAPI service
and against scripted transports.
"""

import asyncio
import json

import httpx
import pytest

from fakes import challenge, wait_until
from invoice_jobs.jobs.client import JobLifecycleClient
from invoice_jobs.jobs.errors import CreationError, RemoteCallError
from invoice_jobs.jobs.http_api import InvoiceJobsAPI
from invoice_jobs.jobs.manager import JobManager
from invoice_jobs.jobs.models import CreateJobRequest, JobPhase
from invoice_jobs.main import build_app, create_app

ACCESS_KEY = "29250112345678000190650010000123451234567890"


async def captcha_worker(access_key, solver):
    solution = await solver.solve(challenge("c1", b"\x89PNG"))
    if solution != "123":
        raise ValueError("invalid captcha solution")
    return {"accessKey": access_key, "total": "10.00"}


def asgi_api(app) -> InvoiceJobsAPI:
    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver/api"
    )
    return InvoiceJobsAPI(client=client)


def mock_api(handler) -> InvoiceJobsAPI:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://testserver/api"
    )
    return InvoiceJobsAPI(client=client)


class TestAgainstService:
    """Round trips through the FastAPI routes."""

    @pytest.mark.asyncio
    async def test_create_and_fetch(self):
        manager = JobManager(captcha_worker)
        api = asgi_api(create_app(manager))
        try:
            handle = await api.create_job(CreateJobRequest(access_key=ACCESS_KEY))
            await wait_until(
                lambda: manager.get_job(handle.job_id).status is JobPhase.AWAITING_VERIFICATION
            )
            snapshot = await api.get_job_status(handle.job_id)

            assert snapshot.id == handle.job_id
            assert snapshot.is_awaiting_verification
            assert snapshot.access_key == ACCESS_KEY
            assert snapshot.created_at is not None
            assert snapshot.verification_challenge.image_bytes() == b"\x89PNG"
            assert snapshot.result is None
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_client_flow_with_captcha(self):
        manager = JobManager(captcha_worker)
        api = asgi_api(create_app(manager))
        client = JobLifecycleClient.from_api(api, poll_interval=0.01)
        try:
            await client.create(CreateJobRequest(access_key=ACCESS_KEY))
            observation = await asyncio.wait_for(client.wait_until_settled(), 2.0)
            assert observation.is_awaiting_verification
            assert observation.verification_challenge.id == "c1"

            await client.resolve_captcha("123")
            observation = await asyncio.wait_for(client.wait_until_settled(), 2.0)

            assert observation.is_completed
            assert observation.result == {"accessKey": ACCESS_KEY, "total": "10.00"}
        finally:
            await client.cancel()
            await manager.stop()

    @pytest.mark.asyncio
    async def test_wrong_captcha_fails_job(self):
        manager = JobManager(captcha_worker)
        api = asgi_api(create_app(manager))
        client = JobLifecycleClient.from_api(api, poll_interval=0.01)
        try:
            await client.create(CreateJobRequest(access_key=ACCESS_KEY))
            await asyncio.wait_for(client.wait_until_settled(), 2.0)
            await client.resolve_captcha("999")
            observation = await asyncio.wait_for(client.wait_until_settled(), 2.0)

            assert observation.is_failed
            assert observation.error == "invalid captcha solution"
        finally:
            await client.cancel()
            await manager.stop()

    @pytest.mark.asyncio
    async def test_unknown_job_is_404(self):
        api = asgi_api(build_app(captcha_worker))

        with pytest.raises(RemoteCallError) as exc_info:
            await api.get_job_status("missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.error == "Job not found"
        assert exc_info.value.stage == "status"

    @pytest.mark.asyncio
    async def test_empty_access_key_is_rejected(self):
        api = asgi_api(build_app(captcha_worker))
        client = JobLifecycleClient.from_api(api)

        with pytest.raises(CreationError) as exc_info:
            await client.create(CreateJobRequest(access_key=""))

        assert exc_info.value.status_code == 400
        assert exc_info.value.error == "accessKey is required"
        assert client.job_id is None

    @pytest.mark.asyncio
    async def test_captcha_for_running_job_is_400(self):
        async def slow_worker(access_key, solver):
            await asyncio.sleep(10)

        manager = JobManager(slow_worker)
        api = asgi_api(create_app(manager))
        try:
            handle = await api.create_job(CreateJobRequest(access_key=ACCESS_KEY))

            with pytest.raises(RemoteCallError) as exc_info:
                await api.submit_captcha(handle.job_id, "123")

            assert exc_info.value.status_code == 400
            assert exc_info.value.error == "Job is not waiting for captcha"
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_health(self):
        manager = JobManager(captcha_worker)
        app = create_app(manager)
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://testserver"
        ) as http:
            response = await http.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "jobs": 0}


class TestTransportFailures:
    """Errors that never reach a well-behaved service."""

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        api = mock_api(handler)

        with pytest.raises(RemoteCallError) as exc_info:
            await api.get_job_status("job-1")

        assert exc_info.value.status_code is None
        assert "ConnectError" in exc_info.value.error

    @pytest.mark.asyncio
    async def test_plain_text_rejection(self):
        api = mock_api(lambda request: httpx.Response(429, text="rate limited"))

        with pytest.raises(RemoteCallError) as exc_info:
            await api.create_job(CreateJobRequest(access_key=ACCESS_KEY))

        assert exc_info.value.error == "rate limited"
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_empty_error_body(self):
        api = mock_api(lambda request: httpx.Response(503))

        with pytest.raises(RemoteCallError, match="HTTP error! status: 503"):
            await api.get_job_status("job-1")

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        api = mock_api(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(RemoteCallError, match="unexpected response body"):
            await api.get_job_status("job-1")

    @pytest.mark.asyncio
    async def test_create_without_job_id(self):
        api = mock_api(lambda request: httpx.Response(200, json={}))

        with pytest.raises(RemoteCallError) as exc_info:
            await api.create_job(CreateJobRequest(access_key=ACCESS_KEY))

        assert exc_info.value.stage == "create"

    @pytest.mark.asyncio
    async def test_request_shapes(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.raw_path, json.loads(request.content)))
            if request.url.path.endswith("/captcha"):
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(200, json={"jobId": "a/b"})

        api = mock_api(handler)
        handle = await api.create_job(CreateJobRequest(access_key="K"))
        await api.submit_captcha(handle.job_id, "xyz")

        assert seen[0] == ("POST", b"/api/invoice-jobs", {"accessKey": "K"})
        assert seen[1] == ("POST", b"/api/invoice-jobs/a%2Fb/captcha", {"solution": "xyz"})

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(204)))

        async with InvoiceJobsAPI(client=http):
            pass

        assert not http.is_closed
        await http.aclose()
