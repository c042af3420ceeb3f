"""
Video delivery for GET /api/videos/{id}/stream.

Object-store uploads are served by redirecting to a short-lived signed URL.
Legacy uploads kept on local disk are served directly with single-range
partial content support: a Range request gets at most STREAM_CHUNK_SIZE + 1
bytes starting at the requested offset; the end of the requested range is
ignored.
"""

import logging
import re
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple

import aiofiles
from fastapi import HTTPException, Request
from fastapi.responses import RedirectResponse, Response, StreamingResponse

from api.metrics import VIDEO_STREAMS_TOTAL
from api.object_store import InvalidObjectReferenceError, ObjectStoreError, is_remote_reference, parse_object_reference
from config import S3_BUCKET, SIGNED_URL_TTL, STREAM_CHUNK_SIZE, STREAM_READ_SIZE, UPLOADS_DIR

logger = logging.getLogger(__name__)

VIDEO_CONTENT_TYPE = "video/mp4"

_RANGE_START = re.compile(r"^\s*bytes\s*=\s*(\d+)")


def parse_range_start(range_header: Optional[str]) -> int:
    """Start offset from a "bytes=N-..." header; 0 when absent or unparseable."""
    if not range_header:
        return 0
    match = _RANGE_START.match(range_header)
    return int(match.group(1)) if match else 0


def compute_byte_range(start: int, size: int, chunk_size: int = STREAM_CHUNK_SIZE) -> Tuple[int, int]:
    """Inclusive (start, end) for a partial response. The caller checks start < size."""
    return start, min(start + chunk_size, size - 1)


def resolve_local_path(reference: str) -> Path:
    path = Path(reference)
    if path.is_absolute():
        return path
    return UPLOADS_DIR / path.name


async def iter_file(path: Path, start: int, end: int, read_size: int = STREAM_READ_SIZE) -> AsyncIterator[bytes]:
    """Yield bytes start..end (inclusive) of path in bounded reads."""
    remaining = end - start + 1
    async with aiofiles.open(path, "rb") as f:
        await f.seek(start)
        while remaining > 0:
            data = await f.read(min(read_size, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


async def redirect_to_signed_url(reference: str, signer) -> RedirectResponse:
    """Redirect to a signed URL, or to the raw reference if signing fails."""
    try:
        target = parse_object_reference(reference, S3_BUCKET)
        url = await signer.generate_signed_url(target, SIGNED_URL_TTL)
        VIDEO_STREAMS_TOTAL.labels(mode="signed").inc()
    except (InvalidObjectReferenceError, ObjectStoreError) as e:
        logger.warning(f"Could not sign {reference}, redirecting to it directly: {e}")
        VIDEO_STREAMS_TOTAL.labels(mode="unsigned").inc()
        url = reference
    return RedirectResponse(url)


def serve_local_file(path: Path, range_header: Optional[str]) -> Response:
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="File not found locally")

    if not range_header:
        VIDEO_STREAMS_TOTAL.labels(mode="full").inc()
        return StreamingResponse(
            iter_file(path, 0, size - 1),
            status_code=200,
            media_type=VIDEO_CONTENT_TYPE,
            headers={"Content-Length": str(size), "Accept-Ranges": "bytes"},
        )

    start = parse_range_start(range_header)
    if start >= size:
        return Response(status_code=416, headers={"Content-Range": f"bytes */{size}"})

    start, end = compute_byte_range(start, size)
    VIDEO_STREAMS_TOTAL.labels(mode="range").inc()
    return StreamingResponse(
        iter_file(path, start, end),
        status_code=206,
        media_type=VIDEO_CONTENT_TYPE,
        headers={
            "Content-Range": f"bytes {start}-{end}/{size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
        },
    )


async def stream_video(request: Request, record: dict, signer) -> Response:
    """Response for one video record: signed redirect or local file."""
    reference = record["storage_reference"]
    if is_remote_reference(reference):
        return await redirect_to_signed_url(reference, signer)
    return serve_local_file(resolve_local_path(reference), request.headers.get("range"))
