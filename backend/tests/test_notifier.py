"""Tests for the Telegram notifier and fire_and_forget."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pulsar.services.job_store import Job, PaymentProof
from pulsar.services.notifier import (
    TelegramNotifier,
    _background_tasks,
    _render_new_order,
    fire_and_forget,
)


def _job() -> Job:
    return Job(
        id="a1b2c3d4e5f6a7b8",
        title="<Sunset & Vibes>",
        style="lo-fi",
        payment_proof=PaymentProof(tx_ref="0xtx", payer="0x1234567890abcdef"),
    )


def _mock_client(post) -> AsyncMock:
    client = AsyncMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    client.post = post
    return client


def test_render_escapes_html():
    text = _render_new_order(_job(), "$0.20 USDC")
    assert "&lt;Sunset &amp; Vibes&gt;" in text
    assert "a1b2c3d4e5f6a7b8" in text
    assert "0x12345678..." in text


@pytest.mark.asyncio
async def test_unconfigured_only_logs():
    notifier = TelegramNotifier()
    with patch("pulsar.services.notifier.httpx.AsyncClient") as mock_cls:
        assert await notifier.notify_new_order(_job()) is False
    mock_cls.assert_not_called()


@pytest.mark.asyncio
async def test_sends_message():
    resp = MagicMock(is_success=True, status_code=200)
    post = AsyncMock(return_value=resp)
    notifier = TelegramNotifier("bot-token", "chat-1")

    with patch("pulsar.services.notifier.httpx.AsyncClient", return_value=_mock_client(post)):
        assert await notifier.notify_new_order(_job()) is True

    url = post.call_args.args[0]
    body = post.call_args.kwargs["json"]
    assert url == "https://api.telegram.org/botbot-token/sendMessage"
    assert body["chat_id"] == "chat-1"
    assert body["parse_mode"] == "HTML"


@pytest.mark.asyncio
async def test_non_2xx_returns_false():
    post = AsyncMock(return_value=MagicMock(is_success=False, status_code=403))
    notifier = TelegramNotifier("bot-token", "chat-1")

    with patch("pulsar.services.notifier.httpx.AsyncClient", return_value=_mock_client(post)):
        assert await notifier.notify_new_order(_job()) is False


@pytest.mark.asyncio
async def test_network_error_never_raises():
    post = AsyncMock(side_effect=ConnectionError("Network down"))
    notifier = TelegramNotifier("bot-token", "chat-1")

    with patch("pulsar.services.notifier.httpx.AsyncClient", return_value=_mock_client(post)):
        assert await notifier.notify_new_order(_job()) is False


@pytest.mark.asyncio
async def test_fire_and_forget_logs_failures():
    async def explode():
        raise RuntimeError("detached failure")

    with patch("pulsar.services.notifier.logger") as mock_logger:
        task = fire_and_forget(explode(), name="explode")
        assert task in _background_tasks
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

    assert task not in _background_tasks
    mock_logger.warning.assert_called_once()
