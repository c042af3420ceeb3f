"""
Client for the cloud content-moderation service (AWS Rekognition Video).

A moderation run is asynchronous on the service side: submit() starts a job
against an object in S3 and returns its id, poll() reports the job status and,
once it has succeeded, every moderation label the service detected.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from api.enums import ModerationJobStatus
from api.object_store import ObjectReference
from config import AWS_ACCESS_KEY_ID, AWS_REGION, AWS_SECRET_ACCESS_KEY

logger = logging.getLogger(__name__)

# Upper bound on result pages fetched for a single job
MAX_RESULT_PAGES = 100


class ModerationServiceError(Exception):
    """The moderation service could not be reached or answered with something unusable."""


@dataclass(frozen=True)
class ModerationLabel:
    name: str
    confidence: float = 0.0


@dataclass
class ModerationPoll:
    status: ModerationJobStatus
    labels: List[ModerationLabel] = field(default_factory=list)
    status_message: Optional[str] = None


@dataclass
class ModerationJob:
    """Bookkeeping for one moderation run inside the pipeline."""

    job_id: str
    video_id: int
    status: ModerationJobStatus = ModerationJobStatus.IN_PROGRESS
    labels: List[ModerationLabel] = field(default_factory=list)
    poll_count: int = 0
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record_poll(self, poll: ModerationPoll) -> None:
        self.poll_count += 1
        self.status = poll.status
        self.labels = list(poll.labels)

    @property
    def elapsed_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.submitted_at).total_seconds()


class ModerationClient(Protocol):
    async def submit(self, reference: ObjectReference, min_confidence: float) -> str:
        ...

    async def poll(self, job_id: str) -> ModerationPoll:
        ...


def format_labels(labels: List[ModerationLabel]) -> str:
    """Join label names with ", " in service order, dropping repeats."""
    seen = []
    for label in labels:
        if label.name and label.name not in seen:
            seen.append(label.name)
    return ", ".join(seen)


def parse_job_status(value: Any) -> ModerationJobStatus:
    try:
        return ModerationJobStatus(value)
    except ValueError:
        raise ModerationServiceError(f"Unexpected moderation job status: {value!r}") from None


def parse_labels(entries: Any) -> List[ModerationLabel]:
    """Convert the service's ModerationLabels list into ModerationLabel objects."""
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ModerationServiceError("Malformed moderation response: ModerationLabels is not a list")

    labels = []
    for entry in entries:
        detail = entry.get("ModerationLabel") if isinstance(entry, dict) else None
        if not isinstance(detail, dict) or not detail.get("Name"):
            raise ModerationServiceError("Malformed moderation response: label without a name")
        labels.append(ModerationLabel(name=detail["Name"], confidence=float(detail.get("Confidence") or 0.0)))
    return labels


class RekognitionModerationClient:
    """ModerationClient backed by Rekognition Video content moderation."""

    def __init__(self, region: str = AWS_REGION, client: Any = None):
        self.region = region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "rekognition",
                region_name=self.region,
                aws_access_key_id=AWS_ACCESS_KEY_ID or None,
                aws_secret_access_key=AWS_SECRET_ACCESS_KEY or None,
            )
        return self._client

    async def _call(self, operation: str, **kwargs) -> dict:
        try:
            return await asyncio.to_thread(getattr(self.client, operation), **kwargs)
        except (BotoCoreError, ClientError) as e:
            raise ModerationServiceError(f"Rekognition {operation} failed: {e}") from e

    async def submit(self, reference: ObjectReference, min_confidence: float) -> str:
        response = await self._call(
            "start_content_moderation",
            Video={"S3Object": {"Bucket": reference.bucket, "Name": reference.key}},
            MinConfidence=float(min_confidence),
        )
        job_id = response.get("JobId")
        if not job_id:
            raise ModerationServiceError("Malformed moderation response: no JobId returned")
        logger.info(f"Rekognition job started: {job_id} (s3://{reference.bucket}/{reference.key})")
        return job_id

    async def poll(self, job_id: str) -> ModerationPoll:
        response = await self._call("get_content_moderation", JobId=job_id)
        status = parse_job_status(response.get("JobStatus"))

        if status is not ModerationJobStatus.SUCCEEDED:
            return ModerationPoll(status=status, status_message=response.get("StatusMessage"))

        labels = parse_labels(response.get("ModerationLabels"))
        next_token = response.get("NextToken")
        pages = 1
        while next_token:
            if pages >= MAX_RESULT_PAGES:
                raise ModerationServiceError(f"Moderation results for {job_id} exceed {MAX_RESULT_PAGES} pages")
            page = await self._call("get_content_moderation", JobId=job_id, NextToken=next_token)
            labels.extend(parse_labels(page.get("ModerationLabels")))
            next_token = page.get("NextToken")
            pages += 1

        return ModerationPoll(status=status, labels=labels)
