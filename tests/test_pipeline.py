"""
Tests for the moderation pipeline.

The record store, moderation service, event channel and cache are replaced
with small in-memory fakes so each run is deterministic and instant.
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from api.enums import ModerationJobStatus, ProcessingStatus, SensitivityStatus
from api.object_store import ObjectReference
from config import PREVIEW_ERROR_PLACEHOLDER_URL, PREVIEW_PLACEHOLDER_URL, PREVIEW_RECOVERY_PLACEHOLDER_URL
from worker.moderation import ModerationLabel, ModerationPoll, ModerationServiceError
from worker.pipeline import (
    MSG_FAILED,
    MSG_SAFE,
    RECOVERY_REASON,
    PipelineRunner,
    process_video,
    recover_stuck_videos,
)

S3_REFERENCE = "https://media-bucket.s3.us-east-1.amazonaws.com/videos/1700000000000-clip.mp4"


class FakeStore:
    def __init__(self, records: Optional[Dict[int, dict]] = None):
        self.records = records or {}
        self.updates: List[dict] = []
        self.fail_updates = False
        self.delete_on_update = False

    async def get(self, video_id):
        record = self.records.get(video_id)
        return dict(record) if record else None

    async def update_fields(self, video_id, **fields):
        if self.fail_updates:
            raise RuntimeError("database is down")
        if self.delete_on_update:
            self.records.pop(video_id, None)
        if video_id not in self.records:
            return False
        values = {key: value.value if hasattr(value, "value") else value for key, value in fields.items()}
        self.records[video_id].update(values)
        self.updates.append(values)
        return True

    async def bulk_update(self, where_processing_in, **fields):
        statuses = {s.value if hasattr(s, "value") else s for s in where_processing_in}
        values = {key: value.value if hasattr(value, "value") else value for key, value in fields.items()}
        count = 0
        for record in self.records.values():
            if record["processing_status"] in statuses:
                record.update(values)
                count += 1
        return count


class FakeModeration:
    def __init__(self, polls=(), submit_error=None, poll_error=None):
        self.polls = list(polls)
        self.submit_error = submit_error
        self.poll_error = poll_error
        self.submitted: List[tuple] = []
        self.poll_count = 0

    async def submit(self, reference, min_confidence):
        if self.submit_error:
            raise self.submit_error
        self.submitted.append((reference, min_confidence))
        return "job-123"

    async def poll(self, job_id):
        self.poll_count += 1
        if self.poll_error:
            raise self.poll_error
        if len(self.polls) > 1:
            return self.polls.pop(0)
        return self.polls[0]


class FakeEvents:
    def __init__(self):
        self.emitted: List[tuple] = []

    async def emit(self, principal_id, payload):
        self.emitted.append((principal_id, payload))

    def payloads(self):
        return [payload for _, payload in self.emitted]

    def progress(self):
        return [payload["progress"] for payload in self.payloads() if "progress" in payload]


class FakeCache:
    def __init__(self):
        self.flushes = 0

    def flush(self):
        self.flushes += 1


def make_record(video_id=1, owner_id=7, **overrides):
    record = {
        "id": video_id,
        "owner_id": owner_id,
        "title": "Clip",
        "storage_reference": S3_REFERENCE,
        "processing_status": "pending",
        "sensitivity_status": "pending",
        "flagged_reason": "",
        "thumbnail_path": None,
    }
    record.update(overrides)
    return record


IN_PROGRESS = ModerationPoll(status=ModerationJobStatus.IN_PROGRESS)


def succeeded(*names):
    return ModerationPoll(
        status=ModerationJobStatus.SUCCEEDED,
        labels=[ModerationLabel(name=name, confidence=90.0) for name in names],
    )


@pytest.fixture
def fakes():
    return {
        "store": FakeStore({1: make_record()}),
        "events": FakeEvents(),
        "cache": FakeCache(),
    }


async def run(fakes, moderation, video_id=1, **options):
    options.setdefault("poll_interval", 0)
    options.setdefault("bucket", "")
    await process_video(
        video_id,
        store=fakes["store"],
        moderation=moderation,
        events=fakes["events"],
        cache=fakes["cache"],
        **options,
    )


class TestSuccessfulModeration:
    async def test_safe_video(self, fakes):
        moderation = FakeModeration([IN_PROGRESS, IN_PROGRESS, succeeded()])

        await run(fakes, moderation)

        record = fakes["store"].records[1]
        assert record["processing_status"] == "completed"
        assert record["sensitivity_status"] == "safe"
        assert record["flagged_reason"] == ""
        assert record["thumbnail_path"] == PREVIEW_PLACEHOLDER_URL
        assert fakes["cache"].flushes == 1

        assert fakes["events"].progress() == [10, 30, 50, 50, 50, 90, 100]
        final = fakes["events"].payloads()[-1]
        assert final == {
            "videoId": 1,
            "status": "completed",
            "progress": 100,
            "msg": MSG_SAFE,
            "sensitivity": "safe",
            "reason": "",
        }
        assert all(principal == 7 for principal, _ in fakes["events"].emitted)

    async def test_submits_bucket_and_key(self, fakes):
        moderation = FakeModeration([succeeded()])

        await run(fakes, moderation, min_confidence=75.0)

        reference, confidence = moderation.submitted[0]
        assert reference == ObjectReference(bucket="media-bucket", key="videos/1700000000000-clip.mp4")
        assert confidence == 75.0

    async def test_configured_bucket_wins(self, fakes):
        moderation = FakeModeration([succeeded()])

        await run(fakes, moderation, bucket="configured-bucket")

        assert moderation.submitted[0][0].bucket == "configured-bucket"

    async def test_flagged_video(self, fakes):
        moderation = FakeModeration([succeeded("Violence", "Weapons", "Violence")])

        await run(fakes, moderation)

        record = fakes["store"].records[1]
        assert record["processing_status"] == "completed"
        assert record["sensitivity_status"] == "flagged"
        assert record["flagged_reason"] == "Violence, Weapons"

        final = fakes["events"].payloads()[-1]
        assert final["msg"] == "Caution: Content Flagged (3 issues detected: Violence, Weapons)"
        assert final["sensitivity"] == "flagged"
        assert final["reason"] == "Violence, Weapons"

    async def test_processing_is_never_persisted(self, fakes):
        moderation = FakeModeration([IN_PROGRESS, succeeded()])

        await run(fakes, moderation)

        persisted = [update.get("processing_status") for update in fakes["store"].updates]
        assert ProcessingStatus.PROCESSING.value not in persisted
        statuses = [payload["status"] for payload in fakes["events"].payloads()]
        assert statuses[:-1] == ["processing"] * (len(statuses) - 1)


class TestFailedModeration:
    async def test_job_failure_marks_failed(self, fakes):
        failed = ModerationPoll(status=ModerationJobStatus.FAILED, status_message="Unsupported codec")

        await run(fakes, FakeModeration([failed]))

        record = fakes["store"].records[1]
        assert record["processing_status"] == "failed"
        assert record["sensitivity_status"] == "pending"
        final = fakes["events"].payloads()[-1]
        assert final == {"videoId": 1, "status": "failed", "msg": MSG_FAILED}
        assert fakes["cache"].flushes == 1

    async def test_local_reference_fails_without_submitting(self, fakes):
        fakes["store"].records[1]["storage_reference"] = "/srv/uploads/clip.mp4"
        moderation = FakeModeration([succeeded()])

        await run(fakes, moderation)

        assert moderation.submitted == []
        assert fakes["store"].records[1]["processing_status"] == "failed"
        assert fakes["events"].payloads()[-1]["status"] == "failed"


class TestFailSafe:
    async def test_submit_error_releases_as_flagged(self, fakes):
        moderation = FakeModeration(submit_error=ModerationServiceError("AccessDenied"))

        await run(fakes, moderation)

        record = fakes["store"].records[1]
        assert record["processing_status"] == "completed"
        assert record["sensitivity_status"] == "flagged"
        assert record["flagged_reason"] == "AI Processing Error: AccessDenied"
        assert record["thumbnail_path"] == PREVIEW_ERROR_PLACEHOLDER_URL

        final = fakes["events"].payloads()[-1]
        assert final["status"] == "completed"
        assert final["msg"] == "AI Analysis Failed (Video is viewable): AccessDenied"
        assert final["sensitivity"] == "flagged"
        assert "progress" not in final

    async def test_existing_thumbnail_is_kept(self, fakes):
        fakes["store"].records[1]["thumbnail_path"] = "https://cdn.example.com/thumb.png"

        await run(fakes, FakeModeration(submit_error=ModerationServiceError("boom")))

        assert fakes["store"].records[1]["thumbnail_path"] == "https://cdn.example.com/thumb.png"

    async def test_poll_error(self, fakes):
        moderation = FakeModeration(poll_error=ModerationServiceError("Throttled"))

        await run(fakes, moderation)

        assert fakes["store"].records[1]["flagged_reason"] == "AI Processing Error: Throttled"

    async def test_timeout(self, fakes):
        moderation = FakeModeration([IN_PROGRESS])

        await run(fakes, moderation, poll_interval=0.01, max_wait=0.05)

        record = fakes["store"].records[1]
        assert record["processing_status"] == "completed"
        assert record["sensitivity_status"] == "flagged"
        assert record["flagged_reason"].startswith("AI Processing Error: Moderation job job-123 still in progress")

    async def test_error_without_message_uses_type_name(self, fakes):
        await run(fakes, FakeModeration(submit_error=RuntimeError()))

        assert fakes["store"].records[1]["flagged_reason"] == "AI Processing Error: RuntimeError"

    async def test_fail_safe_write_error_does_not_raise(self, fakes):
        fakes["store"].fail_updates = True

        await run(fakes, FakeModeration(submit_error=ModerationServiceError("boom")))

        assert fakes["cache"].flushes == 0
        assert all(payload["status"] == "processing" for payload in fakes["events"].payloads())


class TestDeletedRecords:
    async def test_missing_record_is_a_no_op(self, fakes):
        moderation = FakeModeration([succeeded()])

        await run(fakes, moderation, video_id=99)

        assert moderation.submitted == []
        assert fakes["events"].emitted == []
        assert fakes["cache"].flushes == 0

    async def test_deleted_during_run(self, fakes):
        fakes["store"].delete_on_update = True

        await run(fakes, FakeModeration([succeeded("Violence")]))

        assert fakes["cache"].flushes == 0
        assert [p["status"] for p in fakes["events"].payloads()] == ["processing"] * 4
        assert fakes["store"].updates == []


class TestPipelineRunner:
    def _runner(self, fakes, moderation):
        return PipelineRunner(
            fakes["store"],
            moderation,
            fakes["events"],
            fakes["cache"],
            poll_interval=0.01,
            bucket="",
        )

    async def test_runs_in_background(self, fakes):
        runner = self._runner(fakes, FakeModeration([IN_PROGRESS, succeeded()]))

        assert runner.spawn(1) is True
        assert runner.is_active(1)
        assert runner.active_ids() == {1}

        await runner.wait_idle()

        assert not runner.is_active(1)
        assert runner.active_ids() == set()
        assert fakes["store"].records[1]["sensitivity_status"] == "safe"

    async def test_one_run_per_video(self, fakes):
        moderation = FakeModeration([succeeded()])
        runner = self._runner(fakes, moderation)

        assert runner.spawn(1) is True
        assert runner.spawn(1) is False
        await runner.wait_idle()

        assert len(moderation.submitted) == 1
        assert runner.spawn(1) is True
        await runner.wait_idle()

    async def test_aclose_cancels_running_tasks(self, fakes):
        runner = self._runner(fakes, FakeModeration([IN_PROGRESS]))
        runner.spawn(1)
        await asyncio.sleep(0.02)

        await runner.aclose()

        assert runner.active_ids() == set()
        assert fakes["store"].records[1]["processing_status"] == "pending"


class TestRecoverStuckVideos:
    async def test_force_completes_pending_videos(self):
        store = FakeStore(
            {
                1: make_record(1),
                2: make_record(2, processing_status="processing"),
                3: make_record(3, processing_status="completed", sensitivity_status="safe"),
                4: make_record(4, processing_status="failed"),
            }
        )
        cache = FakeCache()

        count = await recover_stuck_videos(store, cache)

        assert count == 2
        for video_id in (1, 2):
            record = store.records[video_id]
            assert record["processing_status"] == "completed"
            assert record["sensitivity_status"] == "flagged"
            assert record["flagged_reason"] == RECOVERY_REASON
            assert record["thumbnail_path"] == PREVIEW_RECOVERY_PLACEHOLDER_URL
        assert store.records[3]["sensitivity_status"] == "safe"
        assert store.records[4]["processing_status"] == "failed"
        assert cache.flushes == 1

    async def test_nothing_to_recover(self):
        cache = FakeCache()
        assert await recover_stuck_videos(FakeStore(), cache) == 0
        assert cache.flushes == 1
