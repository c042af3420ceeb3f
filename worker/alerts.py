"""
Webhook alerts for moderation pipeline problems.

Sends a JSON POST to PULSE_ALERT_WEBHOOK_URL when:
- the pipeline falls back to completed/flagged because moderation errored
- the moderation service reports a failed job
- an operator force-completes stuck videos

Alerts are rate limited per alert type and video so that a flapping
dependency cannot flood the receiver. Sending never raises.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional

import httpx

import config

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    MODERATION_FAIL_SAFE = "moderation_fail_safe"
    MODERATION_JOB_FAILED = "moderation_job_failed"
    STUCK_VIDEOS_RECOVERED = "stuck_videos_recovered"


@dataclass
class AlertMetrics:
    """Counters and rate-limit state for alerting."""

    fail_safe_runs: int = 0
    failed_jobs: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last send time per rate-limit key
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    def can_send_alert(self, key: str, rate_limit_seconds: int) -> bool:
        last_time = self.last_alert_time.get(key, 0)
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, key: str) -> None:
        self.last_alert_time[key] = time.time()
        self.alerts_sent += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fail_safe_runs": self.fail_safe_runs,
            "failed_jobs": self.failed_jobs,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
        }


_metrics: Optional[AlertMetrics] = None


def get_metrics() -> AlertMetrics:
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics() -> None:
    """Reset metrics (for testing)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """Schedule an alert coroutine without waiting for it; failures are logged."""

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Failed to send alert (fire-and-forget): {e}")

    try:
        asyncio.get_running_loop().create_task(_safe_send())
    except RuntimeError:
        logger.debug("Cannot send alert: no running event loop")


def _rate_limit_key(alert_type: AlertType, video_id: Optional[int]) -> str:
    if video_id is None:
        return alert_type.value
    return f"{alert_type.value}:{video_id}"


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    video_id: Optional[int] = None,
    force: bool = False,
) -> bool:
    """
    POST an alert to the configured webhook.

    Returns True if the webhook accepted it, False if alerting is disabled,
    rate limited, or the request failed.
    """
    webhook_url = config.ALERT_WEBHOOK_URL
    if not webhook_url:
        return False

    metrics = get_metrics()
    key = _rate_limit_key(alert_type, video_id)

    if not force and not metrics.can_send_alert(key, config.ALERT_RATE_LIMIT_SECONDS):
        metrics.alerts_rate_limited += 1
        logger.debug(f"Alert {key} rate limited")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "video_id": video_id,
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=config.ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(webhook_url, json=payload)
            response.raise_for_status()
    except httpx.TimeoutException:
        metrics.alerts_failed += 1
        logger.warning(f"Alert webhook timed out after {config.ALERT_WEBHOOK_TIMEOUT}s")
        return False
    except httpx.HTTPStatusError as e:
        metrics.alerts_failed += 1
        logger.warning(f"Alert webhook returned error: {e.response.status_code}")
        return False
    except Exception as e:
        metrics.alerts_failed += 1
        logger.warning(f"Failed to send alert webhook: {e}")
        return False

    metrics.record_alert_sent(key)
    logger.info(f"Alert sent: {key}")
    return True


async def alert_fail_safe(video_id: int, title: str, error: str) -> bool:
    """Moderation errored and the video was released as flagged."""
    get_metrics().fail_safe_runs += 1
    return await send_webhook_alert(
        AlertType.MODERATION_FAIL_SAFE,
        {"title": title, "error": error[:500] if error else None},
        video_id=video_id,
    )


async def alert_moderation_failed(video_id: int, title: str, job_id: str, status_message: Optional[str]) -> bool:
    """The moderation service reported the job as failed."""
    get_metrics().failed_jobs += 1
    return await send_webhook_alert(
        AlertType.MODERATION_JOB_FAILED,
        {"title": title, "job_id": job_id, "status_message": status_message},
        video_id=video_id,
    )


async def alert_stuck_recovered(count: int) -> bool:
    """Operator recovery force-completed stuck videos."""
    return await send_webhook_alert(
        AlertType.STUCK_VIDEOS_RECOVERED,
        {"videos_updated": count},
        force=True,
    )
