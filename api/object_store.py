"""
Object storage for uploaded videos.

Uploads go to S3 when a bucket is configured and to the local uploads
directory otherwise. The value persisted on the video record (the "storage
reference") is the public object URL for S3 uploads and the filesystem path
for local ones; it never changes after upload.

boto3 is synchronous, so every S3 call runs in a worker thread.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Optional
from urllib.parse import quote, unquote, urlparse

import aiofiles
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from slugify import slugify

from config import (
    AWS_ACCESS_KEY_ID,
    AWS_REGION,
    AWS_SECRET_ACCESS_KEY,
    MAX_UPLOAD_SIZE,
    S3_KEY_PREFIX,
    SIGNED_URL_TTL,
    UPLOAD_CHUNK_SIZE,
    UPLOADS_DIR,
)

logger = logging.getLogger(__name__)

_REMOTE_REFERENCE = re.compile(r"^https?://", re.IGNORECASE)
# Virtual-hosted style: <bucket>.s3.amazonaws.com or <bucket>.s3.<region>.amazonaws.com
_VIRTUAL_HOST = re.compile(r"^(?P<bucket>.+?)\.s3[.-]", re.IGNORECASE)


class InvalidObjectReferenceError(ValueError):
    """The storage reference cannot be turned into a bucket/key pair."""


class ObjectStoreError(Exception):
    """Storing or reading an object failed."""


class UploadTooLargeError(ObjectStoreError):
    """The uploaded file exceeds the configured maximum size."""

    def __init__(self, max_size: int):
        self.max_size = max_size
        super().__init__(f"File too large. Maximum upload size is {max_size / (1024 ** 3):.0f} GB")


@dataclass(frozen=True)
class ObjectReference:
    bucket: str
    key: str


@dataclass(frozen=True)
class StoredObject:
    reference: str
    size: int


def is_remote_reference(reference: Optional[str]) -> bool:
    """True for http(s) URLs, False for local filesystem paths."""
    return bool(reference) and _REMOTE_REFERENCE.match(reference) is not None


def parse_object_reference(storage_reference: str, default_bucket: str = "") -> ObjectReference:
    """
    Extract the bucket and key from a stored object URL.

    The key is the URL path without its leading slash, percent-decoded. The
    bucket is default_bucket when set, otherwise the virtual-host prefix of
    the hostname.

    Raises:
        InvalidObjectReferenceError: for local paths, empty keys, or when no
            bucket can be determined
    """
    if not is_remote_reference(storage_reference):
        raise InvalidObjectReferenceError(f"Not an object URL: {storage_reference!r}")

    parsed = urlparse(storage_reference)
    key = unquote(parsed.path[1:] if parsed.path.startswith("/") else parsed.path)
    if not key:
        raise InvalidObjectReferenceError(f"Object URL has no key: {storage_reference!r}")

    bucket = default_bucket
    if not bucket:
        match = _VIRTUAL_HOST.match(parsed.hostname or "")
        if match:
            bucket = match.group("bucket")
    if not bucket:
        raise InvalidObjectReferenceError(f"Cannot determine bucket for {storage_reference!r}")

    return ObjectReference(bucket=bucket, key=key)


def build_object_key(filename: str, prefix: str = S3_KEY_PREFIX, now_ms: Optional[int] = None) -> str:
    """Build a unique key: <prefix>/<epoch-millis>-<slugified stem><ext>."""
    path = Path(filename or "")
    stem = slugify(path.stem) or "video"
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{prefix}/{now_ms}-{stem}{path.suffix.lower()}"


def _measure(fileobj: BinaryIO) -> int:
    size = fileobj.seek(0, 2)
    fileobj.seek(0)
    return size


class S3ObjectStore:
    """S3 bucket access: uploads, downloads and signed URLs."""

    backend = "s3"

    def __init__(self, bucket: str, region: str = AWS_REGION, client: Any = None):
        self.bucket = bucket
        self.region = region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self.region,
                aws_access_key_id=AWS_ACCESS_KEY_ID or None,
                aws_secret_access_key=AWS_SECRET_ACCESS_KEY or None,
            )
        return self._client

    def object_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"

    async def put_object(self, fileobj: BinaryIO, key: str, content_type: str = "video/mp4") -> str:
        """Upload fileobj under key and return its object URL."""
        try:
            await asyncio.to_thread(
                self.client.upload_fileobj,
                fileobj,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"S3 upload failed for {key}: {e}") from e
        logger.info(f"Uploaded s3://{self.bucket}/{key}")
        return self.object_url(key)

    async def store_upload(self, upload, key: str, content_type: str, max_size: int = MAX_UPLOAD_SIZE) -> StoredObject:
        size = await asyncio.to_thread(_measure, upload.file)
        if size > max_size:
            raise UploadTooLargeError(max_size)
        url = await self.put_object(upload.file, key, content_type)
        return StoredObject(reference=url, size=size)

    async def get_object(self, reference: ObjectReference):
        """Return the streaming body of an object."""
        try:
            response = await asyncio.to_thread(self.client.get_object, Bucket=reference.bucket, Key=reference.key)
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"S3 download failed for {reference.key}: {e}") from e
        return response["Body"]

    async def generate_signed_url(self, reference: ObjectReference, ttl: int = SIGNED_URL_TTL) -> str:
        """Time-limited GET URL for a private object."""
        try:
            return await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": reference.bucket, "Key": reference.key},
                ExpiresIn=ttl,
            )
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Signing failed for {reference.key}: {e}") from e


class LocalUploadStore:
    """Writes uploads under the local uploads directory (no bucket configured)."""

    backend = "local"

    def __init__(self, root: Path = UPLOADS_DIR):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / Path(key).name

    async def store_upload(self, upload, key: str, content_type: str, max_size: int = MAX_UPLOAD_SIZE) -> StoredObject:
        path = self.path_for(key)
        total = 0
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "wb") as out:
                while chunk := await upload.read(UPLOAD_CHUNK_SIZE):
                    total += len(chunk)
                    if total > max_size:
                        raise UploadTooLargeError(max_size)
                    await out.write(chunk)
        except UploadTooLargeError:
            path.unlink(missing_ok=True)
            raise
        except OSError as e:
            path.unlink(missing_ok=True)
            raise ObjectStoreError(f"Local write failed for {path.name}: {e}") from e

        logger.info(f"Stored upload locally: {path.name} ({total} bytes)")
        return StoredObject(reference=str(path), size=total)
