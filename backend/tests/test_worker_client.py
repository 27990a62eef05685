"""Tests for the worker client and its poll loop (HTTP mocked)."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from pulsar.worker_client import NO_ARTIFACTS_ERROR, WORKER_PATH, WorkerClient, WorkerRunner

_BASE = "https://pulsar.test"


def _resp(status_code: int, body: dict, method: str = "GET") -> httpx.Response:
    return httpx.Response(
        status_code, json=body, request=httpx.Request(method, f"{_BASE}{WORKER_PATH}")
    )


@pytest.fixture
def worker_client():
    return WorkerClient(_BASE, "s3cret")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def test_sends_bearer_secret(worker_client):
    assert worker_client.client.headers["Authorization"] == "Bearer s3cret"


@pytest.mark.asyncio
async def test_claim_returns_job(worker_client):
    job = {"id": "a1", "title": "Sunset Vibes", "style": "lo-fi", "status": "processing"}
    with patch.object(
        worker_client.client, "get", new_callable=AsyncMock, return_value=_resp(200, {"job": job})
    ) as mock_get:
        assert await worker_client.claim() == job

    mock_get.assert_awaited_once_with(WORKER_PATH, params={"action": "claim"})


@pytest.mark.asyncio
async def test_claim_empty_queue(worker_client):
    body = {"job": None, "message": "No jobs in queue"}
    with patch.object(worker_client.client, "get", new_callable=AsyncMock, return_value=_resp(200, body)):
        assert await worker_client.claim() is None


@pytest.mark.asyncio
async def test_claim_unauthorized(worker_client):
    with patch.object(
        worker_client.client,
        "get",
        new_callable=AsyncMock,
        return_value=_resp(401, {"error": "Unauthorized"}),
    ):
        assert await worker_client.claim() is None


@pytest.mark.asyncio
async def test_claim_transport_error(worker_client):
    with patch.object(
        worker_client.client, "get", new_callable=AsyncMock, side_effect=httpx.ConnectError("down")
    ):
        assert await worker_client.claim() is None


@pytest.mark.asyncio
async def test_complete_posts_result(worker_client):
    with patch.object(
        worker_client.client,
        "post",
        new_callable=AsyncMock,
        return_value=_resp(200, {"success": True}, "POST"),
    ) as mock_post:
        assert await worker_client.complete("a1", ["u1", "u2"]) is True

    mock_post.assert_awaited_once_with(
        WORKER_PATH, json={"action": "complete", "jobId": "a1", "result": ["u1", "u2"]}
    )


@pytest.mark.asyncio
async def test_fail_reports_false_on_409(worker_client):
    with patch.object(
        worker_client.client,
        "post",
        new_callable=AsyncMock,
        return_value=_resp(409, {"error": "already completed"}, "POST"),
    ) as mock_post:
        assert await worker_client.fail("a1", "boom") is False

    assert mock_post.await_args.kwargs["json"] == {"action": "fail", "jobId": "a1", "error": "boom"}


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def _runner_client(jobs: list) -> AsyncMock:
    client = AsyncMock(spec=WorkerClient)
    client.base_url = _BASE
    client.claim = AsyncMock(side_effect=jobs)
    client.complete = AsyncMock(return_value=True)
    client.fail = AsyncMock(return_value=True)
    return client


@pytest.mark.asyncio
async def test_run_once_completes_job():
    client = _runner_client([{"id": "a1", "title": "Sunset Vibes"}])
    handler = AsyncMock(return_value=["https://cdn.test/a1.mp3"])

    assert await WorkerRunner(client, handler).run_once() is True

    handler.assert_awaited_once_with({"id": "a1", "title": "Sunset Vibes"})
    client.complete.assert_awaited_once_with("a1", ["https://cdn.test/a1.mp3"])
    client.fail.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_once_reports_handler_failure():
    client = _runner_client([{"id": "a1"}])
    handler = AsyncMock(side_effect=TimeoutError("render took too long"))

    assert await WorkerRunner(client, handler).run_once() is True

    client.fail.assert_awaited_once_with("a1", "TimeoutError: render took too long")
    client.complete.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("result", [[], None])
async def test_run_once_fails_job_without_artifacts(result):
    client = _runner_client([{"id": "a1"}])
    handler = AsyncMock(return_value=result)

    assert await WorkerRunner(client, handler).run_once() is True

    client.fail.assert_awaited_once_with("a1", NO_ARTIFACTS_ERROR)
    client.complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_once_empty_queue():
    client = _runner_client([None])
    handler = AsyncMock()

    assert await WorkerRunner(client, handler).run_once() is False
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_until_stopped():
    client = _runner_client([{"id": "a1"}, {"id": "a2"}] + [None] * 100)
    runner = WorkerRunner(client, AsyncMock(return_value=["u"]), poll_interval=0.01)

    task = asyncio.create_task(runner.run())
    for _ in range(100):
        if client.complete.await_count == 2:
            break
        await asyncio.sleep(0.01)
    runner.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert [c.args[0] for c in client.complete.await_args_list] == ["a1", "a2"]
    assert runner.running is False
