"""Client side of the worker API, for the process that actually renders tracks.

Usage:

    async def render(job: dict) -> list[str]:
        ...  # produce audio, return artifact URLs

    client = WorkerClient("https://pulsar.example", secret)
    runner = WorkerRunner(client, render)
    await runner.run()
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[list[str]]]

WORKER_PATH = "/api/worker"
NO_ARTIFACTS_ERROR = "Handler returned no artifacts"


class WorkerClient:
    def __init__(self, base_url: str, secret: str, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {secret}"},
        )

    async def claim(self) -> dict[str, Any] | None:
        """Claim the oldest queued job. ``None`` when the queue is empty or on error."""
        try:
            resp = await self.client.get(WORKER_PATH, params={"action": "claim"})
            resp.raise_for_status()
            return resp.json().get("job")
        except httpx.HTTPStatusError as e:
            logger.warning("Claim rejected with status %s", e.response.status_code)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Claim failed: %s", e)
            return None

    async def complete(self, job_id: str, result: list[str]) -> bool:
        return await self._report(
            job_id, {"action": "complete", "jobId": job_id, "result": result}
        )

    async def fail(self, job_id: str, error: str) -> bool:
        return await self._report(job_id, {"action": "fail", "jobId": job_id, "error": error})

    async def _report(self, job_id: str, body: dict[str, Any]) -> bool:
        try:
            resp = await self.client.post(WORKER_PATH, json=body)
            resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("%s failed for job %s: %s", body["action"], job_id, e)
            return False

    async def close(self) -> None:
        await self.client.aclose()


class WorkerRunner:
    """Claim → handle → report loop until ``stop()``."""

    def __init__(self, client: WorkerClient, handler: Handler, poll_interval: float = 5.0):
        self.client = client
        self.handler = handler
        self.poll_interval = poll_interval
        self.running = False
        self._shutdown_event = asyncio.Event()

    async def run(self) -> None:
        self.running = True
        self._shutdown_event.clear()
        logger.info("Worker started against %s", self.client.base_url)

        try:
            while self.running:
                try:
                    handled = await self.run_once()
                except Exception:
                    logger.exception("Error in worker loop")
                    handled = False

                if not handled:
                    await self._idle()
        finally:
            logger.info("Worker stopped")

    def stop(self) -> None:
        self.running = False
        self._shutdown_event.set()

    async def run_once(self) -> bool:
        """Process at most one job; return whether one was claimed."""
        job = await self.client.claim()
        if not job:
            return False

        job_id = job["id"]
        logger.info("Claimed job %s (%r)", job_id, job.get("title"))

        try:
            result = await self.handler(job)
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.error("Job %s failed: %s", job_id, error_msg)
            if not await self.client.fail(job_id, error_msg):
                logger.error("Failed to report failure for job %s", job_id)
            return True

        if not result:
            logger.error("Job %s handler returned no artifacts", job_id)
            if not await self.client.fail(job_id, NO_ARTIFACTS_ERROR):
                logger.error("Failed to report failure for job %s", job_id)
            return True

        if await self.client.complete(job_id, result):
            logger.info("Job %s completed", job_id)
        else:
            logger.error("Job %s rendered but completion report failed", job_id)
        return True

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
