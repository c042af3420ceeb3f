"""
Moderation pipeline: one asynchronous run per uploaded video.

A run extracts the S3 object reference from the video record, submits a
content-moderation job, polls it until the service reports a terminal
status, then persists the verdict, flushes the response cache and notifies
the owner over the event channel.

State written to the record:
    pending -> completed (sensitivity safe/flagged)
    pending -> failed    (sensitivity untouched)

"processing" is only ever reported through events, never persisted.

Moderation errors do not leave content stuck: if anything goes wrong after
the record was fetched, the video is completed as flagged with the error as
its reason so it stays viewable. A record deleted mid-run turns every later
write into a no-op.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Set

from api.audit import AuditAction, log_audit
from api.enums import ModerationJobStatus, ProcessingStatus, SensitivityStatus
from api.errors import truncate_string
from api.events import build_progress_event
from api.metrics import MODERATION_JOB_DURATION_SECONDS, MODERATION_POLLS_TOTAL, PIPELINE_ACTIVE, PIPELINE_RUNS_TOTAL
from api.object_store import InvalidObjectReferenceError, parse_object_reference
from config import (
    ERROR_DETAIL_MAX_LENGTH,
    MODERATION_MAX_WAIT,
    MODERATION_MIN_CONFIDENCE,
    MODERATION_POLL_INTERVAL,
    PREVIEW_ERROR_PLACEHOLDER_URL,
    PREVIEW_PLACEHOLDER_URL,
    PREVIEW_RECOVERY_PLACEHOLDER_URL,
    S3_BUCKET,
)
from worker.alerts import alert_fail_safe, alert_moderation_failed, alert_stuck_recovered, send_alert_fire_and_forget
from worker.moderation import ModerationJob, ModerationPoll, format_labels

logger = logging.getLogger(__name__)

MSG_SUBMITTING = "Sending to AI for analysis..."
MSG_SUBMITTED = "Analyzing content..."
MSG_POLLING = "AI Analysis in progress..."
MSG_FINALIZING = "Finalizing results..."
MSG_SAFE = "Processing Complete. Content is Safe."
MSG_FAILED = "AI Analysis Failed."
MSG_NO_REFERENCE = "Video is not stored in object storage; moderation skipped."

PROGRESS_SUBMITTING = 10
PROGRESS_SUBMITTED = 30
PROGRESS_POLLING = 50
PROGRESS_FINALIZING = 90
PROGRESS_DONE = 100

FAIL_SAFE_REASON_PREFIX = "AI Processing Error: "
RECOVERY_REASON = "Force Completed by Recovery"


class ModerationTimeoutError(Exception):
    """A moderation job stayed in progress longer than the configured maximum wait."""


def flagged_message(label_count: int, reason: str) -> str:
    return f"Caution: Content Flagged ({label_count} issues detected: {reason})"


def _error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__


async def _emit(events, owner_id: int, video_id: int, status: str, msg: str, **extra) -> None:
    await events.emit(owner_id, build_progress_event(video_id, status, msg, **extra))


async def process_video(
    video_id: int,
    *,
    store,
    moderation,
    events,
    cache,
    bucket: str = S3_BUCKET,
    min_confidence: float = MODERATION_MIN_CONFIDENCE,
    poll_interval: float = MODERATION_POLL_INTERVAL,
    max_wait: float = MODERATION_MAX_WAIT,
) -> None:
    """
    Run content moderation for one video.

    Never raises: every failure ends in a persisted terminal state, a silent
    abort (record gone), or a logged error.

    Args:
        video_id: Record to moderate
        store: VideoStore-like record store (get / update_fields)
        moderation: ModerationClient
        events: EventChannel used to notify the owner
        cache: Response cache flushed after every persisted transition
        bucket: Bucket holding uploads (empty to derive it from the URL)
        min_confidence: Labels below this confidence are ignored by the service
        poll_interval: Seconds between status polls
        max_wait: Longest a job may stay in progress, in seconds (0 = unbounded)
    """
    record: Optional[Dict[str, Any]] = None
    PIPELINE_ACTIVE.inc()
    try:
        record = await store.get(video_id)
        if record is None:
            logger.info(f"Video {video_id} not found, abandoning moderation run")
            PIPELINE_RUNS_TOTAL.labels(outcome="abandoned").inc()
            return

        owner_id = record["owner_id"]
        logger.info(f"Starting moderation for video {video_id}")

        try:
            reference = parse_object_reference(record["storage_reference"], bucket)
        except InvalidObjectReferenceError as e:
            logger.warning(f"Video {video_id}: cannot derive moderation target: {e}")
            await _finish_failed(video_id, record, store, events, cache, MSG_NO_REFERENCE, error=str(e))
            return

        await _emit(events, owner_id, video_id, ProcessingStatus.PROCESSING.value, MSG_SUBMITTING,
                    progress=PROGRESS_SUBMITTING)
        job = ModerationJob(job_id=await moderation.submit(reference, min_confidence), video_id=video_id)
        await _emit(events, owner_id, video_id, ProcessingStatus.PROCESSING.value, MSG_SUBMITTED,
                    progress=PROGRESS_SUBMITTED)

        poll = await _wait_for_job(job, moderation, events, owner_id, poll_interval, max_wait)
        MODERATION_JOB_DURATION_SECONDS.observe(job.elapsed_seconds)

        if poll.status is ModerationJobStatus.SUCCEEDED:
            await _finish_succeeded(video_id, record, poll, store, events, cache)
        else:
            logger.error(f"Moderation job {job.job_id} for video {video_id} failed: {poll.status_message}")
            send_alert_fire_and_forget(
                alert_moderation_failed(video_id, record["title"], job.job_id, poll.status_message)
            )
            await _finish_failed(video_id, record, store, events, cache, MSG_FAILED, error=poll.status_message)

    except Exception as e:
        if record is None:
            logger.exception(f"Moderation for video {video_id} aborted before the record was loaded: {e}")
            return
        logger.warning(f"Moderation for video {video_id} errored, releasing as flagged: {e}")
        await _fail_safe(video_id, record, e, store, events, cache)
    finally:
        PIPELINE_ACTIVE.dec()


async def _wait_for_job(
    job: ModerationJob,
    moderation,
    events,
    owner_id: int,
    poll_interval: float,
    max_wait: float,
) -> ModerationPoll:
    """Poll until the job leaves IN_PROGRESS. The progress figure stays at a constant midpoint."""
    started = time.monotonic()
    poll = ModerationPoll(status=ModerationJobStatus.IN_PROGRESS)

    while poll.status is ModerationJobStatus.IN_PROGRESS:
        if max_wait and time.monotonic() - started >= max_wait:
            raise ModerationTimeoutError(
                f"Moderation job {job.job_id} still in progress after {job.poll_count} polls ({max_wait}s limit)"
            )
        await asyncio.sleep(poll_interval)

        try:
            poll = await moderation.poll(job.job_id)
        except Exception:
            MODERATION_POLLS_TOTAL.labels(status="error").inc()
            raise
        job.record_poll(poll)
        MODERATION_POLLS_TOTAL.labels(status=poll.status.value).inc()
        logger.debug(f"Moderation job {job.job_id} status: {poll.status.value}")

        await _emit(events, owner_id, job.video_id, ProcessingStatus.PROCESSING.value, MSG_POLLING,
                    progress=PROGRESS_POLLING)

    return poll


async def _finish_succeeded(video_id: int, record: Dict[str, Any], poll: ModerationPoll, store, events, cache) -> None:
    owner_id = record["owner_id"]
    await _emit(events, owner_id, video_id, ProcessingStatus.PROCESSING.value, MSG_FINALIZING,
                progress=PROGRESS_FINALIZING)

    reason = format_labels(poll.labels)
    sensitivity = SensitivityStatus.FLAGGED if poll.labels else SensitivityStatus.SAFE

    updated = await store.update_fields(
        video_id,
        processing_status=ProcessingStatus.COMPLETED,
        sensitivity_status=sensitivity,
        flagged_reason=reason,
        thumbnail_path=PREVIEW_PLACEHOLDER_URL,
    )
    if not updated:
        logger.info(f"Video {video_id} was deleted during moderation, discarding verdict")
        PIPELINE_RUNS_TOTAL.labels(outcome="abandoned").inc()
        return

    cache.flush()
    msg = MSG_SAFE if sensitivity is SensitivityStatus.SAFE else flagged_message(len(poll.labels), reason)
    await _emit(events, owner_id, video_id, ProcessingStatus.COMPLETED.value, msg,
                progress=PROGRESS_DONE, sensitivity=sensitivity.value, reason=reason)

    PIPELINE_RUNS_TOTAL.labels(outcome=sensitivity.value).inc()
    log_audit(
        AuditAction.MODERATION_COMPLETED,
        resource_type="video",
        resource_id=video_id,
        resource_name=record["title"],
        details={"sensitivity": sensitivity.value, "reason": reason},
    )
    logger.info(f"Moderation complete for video {video_id}: {sensitivity.value}")


async def _finish_failed(
    video_id: int,
    record: Dict[str, Any],
    store,
    events,
    cache,
    msg: str,
    error: Optional[str] = None,
) -> None:
    updated = await store.update_fields(video_id, processing_status=ProcessingStatus.FAILED)
    if not updated:
        PIPELINE_RUNS_TOTAL.labels(outcome="abandoned").inc()
        return

    cache.flush()
    await _emit(events, record["owner_id"], video_id, ProcessingStatus.FAILED.value, msg)

    PIPELINE_RUNS_TOTAL.labels(outcome="failed").inc()
    log_audit(
        AuditAction.MODERATION_FAILED,
        resource_type="video",
        resource_id=video_id,
        resource_name=record["title"],
        success=False,
        error=error,
    )


async def _fail_safe(video_id: int, record: Dict[str, Any], error: BaseException, store, events, cache) -> None:
    """Complete the video as flagged with the error as its reason. Never raises."""
    message = _error_text(error)
    reason = truncate_string(f"{FAIL_SAFE_REASON_PREFIX}{message}", ERROR_DETAIL_MAX_LENGTH)
    fields = {
        "processing_status": ProcessingStatus.COMPLETED,
        "sensitivity_status": SensitivityStatus.FLAGGED,
        "flagged_reason": reason,
    }
    if not record.get("thumbnail_path"):
        fields["thumbnail_path"] = PREVIEW_ERROR_PLACEHOLDER_URL

    try:
        updated = await store.update_fields(video_id, **fields)
        if not updated:
            PIPELINE_RUNS_TOTAL.labels(outcome="abandoned").inc()
            return

        cache.flush()
        await _emit(
            events,
            record["owner_id"],
            video_id,
            ProcessingStatus.COMPLETED.value,
            f"AI Analysis Failed (Video is viewable): {message}",
            sensitivity=SensitivityStatus.FLAGGED.value,
            reason=reason,
        )
    except Exception as fallback_error:
        logger.exception(f"Fail-safe update for video {video_id} failed: {fallback_error}")
        return

    PIPELINE_RUNS_TOTAL.labels(outcome="fail_safe").inc()
    log_audit(
        AuditAction.MODERATION_FAIL_SAFE,
        resource_type="video",
        resource_id=video_id,
        resource_name=record["title"],
        success=False,
        error=message,
    )
    send_alert_fire_and_forget(alert_fail_safe(video_id, record["title"], message))


class PipelineRunner:
    """
    Spawns moderation runs as background tasks.

    At most one run per video id is active at a time. Tasks are referenced
    until they finish so they are not garbage collected mid-run, and
    aclose() cancels whatever is still running at shutdown.
    """

    def __init__(self, store, moderation, events, cache, **pipeline_options):
        self.store = store
        self.moderation = moderation
        self.events = events
        self.cache = cache
        self.pipeline_options = pipeline_options
        self._tasks: Dict[int, asyncio.Task] = {}

    def active_ids(self) -> Set[int]:
        return {video_id for video_id, task in self._tasks.items() if not task.done()}

    def is_active(self, video_id: int) -> bool:
        task = self._tasks.get(video_id)
        return task is not None and not task.done()

    def spawn(self, video_id: int) -> bool:
        """Start a run for video_id. Returns False if one is already active."""
        if self.is_active(video_id):
            logger.info(f"Moderation already running for video {video_id}, not starting another")
            return False

        task = asyncio.get_running_loop().create_task(
            process_video(
                video_id,
                store=self.store,
                moderation=self.moderation,
                events=self.events,
                cache=self.cache,
                **self.pipeline_options,
            ),
            name=f"moderation-{video_id}",
        )
        self._tasks[video_id] = task
        task.add_done_callback(lambda finished, vid=video_id: self._forget(vid, finished))
        return True

    def _forget(self, video_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(video_id) is task:
            del self._tasks[video_id]

    async def wait_idle(self) -> None:
        """Wait for every running task to finish (tests and graceful shutdown)."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} moderation run(s) on shutdown")
        self._tasks.clear()


async def recover_stuck_videos(store, cache) -> int:
    """
    Force every pending or in-flight video to completed/flagged.

    Operator tool for runs lost to a restart. Returns the number of videos
    updated.
    """
    count = await store.bulk_update(
        [ProcessingStatus.PENDING, ProcessingStatus.PROCESSING],
        processing_status=ProcessingStatus.COMPLETED,
        sensitivity_status=SensitivityStatus.FLAGGED,
        flagged_reason=RECOVERY_REASON,
        thumbnail_path=PREVIEW_RECOVERY_PLACEHOLDER_URL,
    )
    cache.flush()
    logger.info(f"Recovered {count} stuck video(s)")
    if count:
        log_audit(AuditAction.STUCK_VIDEOS_RECOVERED, resource_type="video", details={"count": count})
        await alert_stuck_recovered(count)
    return count
