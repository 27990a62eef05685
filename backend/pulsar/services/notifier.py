"""Operator notifications: Telegram alert for every paid job.

Delivery is best-effort. ``notify_new_order`` never raises, and the submission
path hands it to ``fire_and_forget`` so the HTTP response never waits on it.
When ``TELEGRAM_BOT_TOKEN`` is unset the notifier only logs.
"""

import asyncio
import html
import logging
from typing import Any, Coroutine

import httpx

from pulsar.services.job_store import Job

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"

# Strong references to in-flight tasks; the event loop only keeps weak ones.
_background_tasks: set[asyncio.Task] = set()


class TelegramNotifier:
    """Posts new-order alerts to a Telegram chat via the Bot API."""

    def __init__(
        self,
        bot_token: str = "",
        chat_id: str = "",
        price_display: str = "$0.20 USDC",
        timeout: float = 10.0,
    ) -> None:
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._price_display = price_display
        self._timeout = timeout
        self._configured = bool(bot_token and chat_id)

        if not self._configured:
            logger.info("Telegram notifier not configured; new orders will be logged only")

    async def notify_new_order(self, job: Job) -> bool:
        """Announce a newly paid job. Returns True if Telegram accepted it."""
        if not self._configured:
            logger.info("New order %s (no Telegram configured)", job.id, extra={"job_id": job.id})
            return False

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{TELEGRAM_API_URL}/bot{self._bot_token}/sendMessage",
                    json={
                        "chat_id": self._chat_id,
                        "text": _render_new_order(job, self._price_display),
                        "parse_mode": "HTML",
                    },
                )
            if not resp.is_success:
                logger.warning(
                    "Telegram returned %d for job %s", resp.status_code, job.id
                )
                return False
            logger.info("Telegram notification sent for job %s", job.id)
            return True
        except Exception as exc:
            logger.warning("Telegram notification failed for job %s: %s", job.id, exc)
            return False


def _render_new_order(job: Job, price_display: str) -> str:
    payer = job.payer or "unknown"
    return (
        "🎵 <b>New Pulsar Order!</b>\n\n"
        f"<b>Job:</b> <code>{job.id}</code>\n"
        f"<b>Title:</b> {html.escape(job.title)}\n"
        f"<b>Style:</b> {html.escape(job.style)}\n"
        f"<b>Payer:</b> <code>{html.escape(payer[:10])}...</code>\n\n"
        f"💰 {html.escape(price_display)} received"
    )


def fire_and_forget(coro: Coroutine[Any, Any, Any], *, name: str = "") -> asyncio.Task:
    """Schedule ``coro`` on the running loop without awaiting it.

    Any exception the coroutine raises is logged and discarded.
    """
    task = asyncio.create_task(coro, name=name or None)
    _background_tasks.add(task)
    task.add_done_callback(_on_background_done)
    return task


def _on_background_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Background task %s failed: %s", task.get_name(), exc)


# ---------------------------------------------------------------------------
# Singleton factory
# ---------------------------------------------------------------------------

_notifier: TelegramNotifier | None = None


def get_notifier() -> TelegramNotifier:
    global _notifier
    if _notifier is None:
        from pulsar.config import settings

        _notifier = TelegramNotifier(
            bot_token=settings.telegram_bot_token,
            chat_id=settings.telegram_chat_id,
            price_display=settings.price_display,
        )
    return _notifier
