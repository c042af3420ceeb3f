"""Tests for moderation pipeline alerting."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from worker.alerts import (
    AlertMetrics,
    AlertType,
    alert_fail_safe,
    alert_moderation_failed,
    alert_stuck_recovered,
    get_metrics,
    reset_metrics,
    send_alert_fire_and_forget,
    send_webhook_alert,
)

WEBHOOK = "https://alerts.example.com/hook"


@pytest.fixture(autouse=True)
def reset_alert_metrics():
    """Reset metrics before each test."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def webhook(monkeypatch):
    monkeypatch.setattr("config.ALERT_WEBHOOK_URL", WEBHOOK)
    monkeypatch.setattr("config.ALERT_RATE_LIMIT_SECONDS", 300)


def mock_http_client(response=None, side_effect=None):
    """Patch target for httpx.AsyncClient used as an async context manager."""
    client = MagicMock()
    client.post = AsyncMock(return_value=response, side_effect=side_effect)
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=client)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory, client


def ok_response():
    response = MagicMock()
    response.raise_for_status = MagicMock()
    return response


class TestAlertMetrics:
    def test_initial_state(self):
        metrics = AlertMetrics()
        assert metrics.to_dict() == {
            "fail_safe_runs": 0,
            "failed_jobs": 0,
            "alerts_sent": 0,
            "alerts_rate_limited": 0,
            "alerts_failed": 0,
        }

    def test_rate_limit_window(self):
        metrics = AlertMetrics()
        assert metrics.can_send_alert("k", 300)
        metrics.record_alert_sent("k")
        assert not metrics.can_send_alert("k", 300)
        assert metrics.can_send_alert("k", 0)
        assert metrics.can_send_alert("other", 300)
        assert metrics.alerts_sent == 1

    def test_singleton_and_reset(self):
        first = get_metrics()
        first.alerts_sent = 5
        assert get_metrics() is first
        reset_metrics()
        assert get_metrics().alerts_sent == 0


class TestSendWebhookAlert:
    async def test_disabled_without_url(self, monkeypatch):
        monkeypatch.setattr("config.ALERT_WEBHOOK_URL", "")
        with patch("httpx.AsyncClient") as client_cls:
            assert await send_webhook_alert(AlertType.MODERATION_FAIL_SAFE, {}) is False
        client_cls.assert_not_called()

    async def test_posts_payload(self, webhook):
        factory, client = mock_http_client(ok_response())

        with patch("httpx.AsyncClient", factory):
            sent = await send_webhook_alert(AlertType.MODERATION_JOB_FAILED, {"job_id": "j1"}, video_id=4)

        assert sent is True
        url = client.post.call_args.args[0]
        payload = client.post.call_args.kwargs["json"]
        assert url == WEBHOOK
        assert payload["event"] == "moderation_job_failed"
        assert payload["video_id"] == 4
        assert payload["details"] == {"job_id": "j1"}
        assert "metrics" in payload
        assert get_metrics().alerts_sent == 1

    async def test_rate_limited_per_video(self, webhook):
        factory, client = mock_http_client(ok_response())

        with patch("httpx.AsyncClient", factory):
            assert await send_webhook_alert(AlertType.MODERATION_FAIL_SAFE, {}, video_id=1) is True
            assert await send_webhook_alert(AlertType.MODERATION_FAIL_SAFE, {}, video_id=1) is False
            assert await send_webhook_alert(AlertType.MODERATION_FAIL_SAFE, {}, video_id=2) is True

        assert client.post.call_count == 2
        assert get_metrics().alerts_rate_limited == 1

    async def test_force_bypasses_rate_limit(self, webhook):
        factory, client = mock_http_client(ok_response())

        with patch("httpx.AsyncClient", factory):
            await send_webhook_alert(AlertType.STUCK_VIDEOS_RECOVERED, {}, force=True)
            await send_webhook_alert(AlertType.STUCK_VIDEOS_RECOVERED, {}, force=True)

        assert client.post.call_count == 2

    @pytest.mark.parametrize(
        "error",
        [
            httpx.TimeoutException("slow"),
            httpx.HTTPStatusError("bad", request=MagicMock(), response=MagicMock(status_code=500)),
            httpx.ConnectError("refused"),
        ],
    )
    async def test_failures_return_false(self, webhook, error):
        factory, _ = mock_http_client(side_effect=error)

        with patch("httpx.AsyncClient", factory):
            assert await send_webhook_alert(AlertType.MODERATION_FAIL_SAFE, {}, video_id=1) is False

        assert get_metrics().alerts_failed == 1
        assert get_metrics().alerts_sent == 0


class TestAlertHelpers:
    async def test_fail_safe_counts_and_truncates(self, webhook):
        factory, client = mock_http_client(ok_response())

        with patch("httpx.AsyncClient", factory):
            await alert_fail_safe(3, "Clip", "x" * 800)

        payload = client.post.call_args.kwargs["json"]
        assert payload["event"] == "moderation_fail_safe"
        assert len(payload["details"]["error"]) == 500
        assert get_metrics().fail_safe_runs == 1

    async def test_moderation_failed(self, webhook):
        factory, client = mock_http_client(ok_response())

        with patch("httpx.AsyncClient", factory):
            await alert_moderation_failed(3, "Clip", "job-1", "Unsupported codec")

        details = client.post.call_args.kwargs["json"]["details"]
        assert details == {"title": "Clip", "job_id": "job-1", "status_message": "Unsupported codec"}
        assert get_metrics().failed_jobs == 1

    async def test_stuck_recovered(self, webhook):
        factory, client = mock_http_client(ok_response())

        with patch("httpx.AsyncClient", factory):
            assert await alert_stuck_recovered(7) is True

        assert client.post.call_args.kwargs["json"]["details"] == {"videos_updated": 7}


class TestFireAndForget:
    async def test_errors_are_swallowed(self):
        async def failing():
            raise RuntimeError("webhook down")

        send_alert_fire_and_forget(failing())
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    def test_without_loop(self):
        async def noop():
            return None

        coro = noop()
        send_alert_fire_and_forget(coro)
        coro.close()
