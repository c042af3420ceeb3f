"""
PulseStream HTTP API.

Uploads, listing, analytics, streaming and moderation progress events.
Moderation of each upload runs in the background (see worker.pipeline);
clients follow it over GET /api/events or by re-reading the record.

Run with: uvicorn api.app:app --host 0.0.0.0 --port 5000
"""

import asyncio
import json
import logging
import math
import re
import traceback
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from sse_starlette.sse import EventSourceResponse

from api.audit import AuditAction, log_audit
from api.auth import get_current_user, list_users, require_role
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    check_storage_available,
    get_real_ip,
    get_request_id,
    rate_limit_exceeded_handler,
)
from api.database import create_tables, database
from api.db_retry import DatabaseRetryableError
from api.enums import ProcessingStatus, SensitivityStatus, UserRole
from api.errors import sanitize_error_message
from api.events import PROCESSING_EVENT, EventChannel
from api.metrics import VIDEO_UPLOADS_TOTAL, get_metrics, init_app_info
from api.object_store import (
    LocalUploadStore,
    ObjectStoreError,
    S3ObjectStore,
    UploadTooLargeError,
    build_object_key,
)
from api.redis_client import RedisClient
from api.response_cache import cache_key_for, create_response_cache
from api.schemas import (
    MAX_DESCRIPTION_LENGTH,
    MAX_TITLE_LENGTH,
    AnalyticsResponse,
    AssignRequest,
    ReasonCount,
    ReprocessResponse,
    VideoListResponse,
    VideoResponse,
    ViewerResponse,
)
from api.streaming import stream_video
from api.video_store import Scope, VideoStore
from config import (
    APP_VERSION,
    AWS_REGION,
    CORS_ALLOWED_ORIGINS,
    IS_PRODUCTION,
    MAX_UPLOAD_SIZE,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_UPLOAD,
    RESPONSE_CACHE_ENABLED,
    RESPONSE_CACHE_MAX_SIZE,
    RESPONSE_CACHE_STORAGE_URL,
    RESPONSE_CACHE_TTL,
    S3_BUCKET,
    SSE_HEARTBEAT_INTERVAL,
    SSE_RECONNECT_TIMEOUT_MS,
    SUPPORTED_VIDEO_EXTENSIONS,
    SUPPORTED_VIDEO_EXTENSIONS_STR,
    UPLOADS_DIR,
    VIDEOS_PAGE_SIZE,
)
from worker.moderation import RekognitionModerationClient
from worker.pipeline import PipelineRunner

logger = logging.getLogger(__name__)

limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)

_HAS_LETTER = re.compile(r"[A-Za-z]")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the database and build the shared components on app.state."""
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For deployments with multiple instances, configure Redis: "
            "PULSE_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    create_tables()
    await database.connect()
    init_app_info(APP_VERSION)

    signer = S3ObjectStore(S3_BUCKET, AWS_REGION)
    app.state.video_store = VideoStore()
    app.state.response_cache = create_response_cache(
        storage_url=RESPONSE_CACHE_STORAGE_URL,
        ttl_seconds=RESPONSE_CACHE_TTL,
        enabled=RESPONSE_CACHE_ENABLED,
        max_size=RESPONSE_CACHE_MAX_SIZE,
    )
    app.state.events = EventChannel()
    app.state.signer = signer
    app.state.object_store = signer if S3_BUCKET else LocalUploadStore(UPLOADS_DIR)
    app.state.runner = PipelineRunner(
        app.state.video_store,
        RekognitionModerationClient(AWS_REGION),
        app.state.events,
        app.state.response_cache,
    )
    logger.info(f"Uploads stored via {app.state.object_store.backend} backend")

    yield

    await app.state.runner.aclose()
    await app.state.events.aclose()
    await RedisClient.reset_instance()
    await database.disconnect()


app = FastAPI(title="PulseStream", description="Video upload and moderation API", lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(DatabaseRetryableError)
async def database_unavailable_handler(request: Request, exc: DatabaseRetryableError):
    logger.warning(f"Database unavailable after retries: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Database temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """500 with the error message; the traceback is included outside production."""
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    if IS_PRODUCTION:
        content = {"detail": sanitize_error_message(str(exc), log_original=False) or "Internal server error"}
    else:
        content = {
            "detail": str(exc) or type(exc).__name__,
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        }
    return JSONResponse(status_code=500, content=content)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=CORS_ALLOWED_ORIGINS != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Length", "Content-Range", "Accept-Ranges", "X-Request-ID"],
)


def _serialize(record: dict) -> dict:
    return VideoResponse.from_record(record).model_dump(by_alias=True, mode="json")


def _flush(request: Request) -> None:
    request.app.state.response_cache.flush()


async def _get_record_or_404(request: Request, video_id: int) -> dict:
    record = await request.app.state.video_store.get(video_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return record


def validate_content_length(request: Request) -> None:
    """Reject oversized uploads from the Content-Length header before reading the body."""
    content_length = request.headers.get("content-length")
    if not content_length:
        return
    try:
        too_large = int(content_length) > MAX_UPLOAD_SIZE
    except ValueError:
        return  # Invalid header, the size is enforced while streaming
    if too_large:
        raise HTTPException(status_code=413, detail=str(UploadTooLargeError(MAX_UPLOAD_SIZE)))


def parse_categories(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [name.strip() for name in raw.split(",") if name.strip()]


def count_flag_reasons(reasons: List[str]) -> List[ReasonCount]:
    """Count individual labels across comma-separated reasons, skipping parts without letters."""
    counts: Counter = Counter()
    for reason in reasons:
        for part in (reason or "").split(","):
            part = part.strip()
            if part and _HAS_LETTER.search(part):
                counts[part] += 1
    return [ReasonCount(name=name, count=count) for name, count in counts.items()]


@app.get("/health")
async def health_check():
    """Database and storage health; 503 when either is unavailable."""
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
            "timestamp": result["timestamp"],
        },
    )


@app.get("/metrics")
async def metrics():
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


# ============ Videos ============


@app.post("/api/videos/upload", status_code=201)
@limiter.limit(RATE_LIMIT_UPLOAD)
async def upload_video(
    request: Request,
    videoFile: Optional[UploadFile] = File(None),
    title: str = Form(""),
    description: str = Form(""),
    categories: str = Form(""),
    user: Dict = Depends(require_role(UserRole.ADMIN, UserRole.EDITOR)),
):
    """Store an upload, create its record and start moderation in the background."""
    validate_content_length(request)

    if videoFile is None or not videoFile.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    file_ext = Path(videoFile.filename).suffix.lower()
    content_type = videoFile.content_type or ""
    if file_ext not in SUPPORTED_VIDEO_EXTENSIONS or not content_type.startswith("video/"):
        raise HTTPException(
            status_code=400,
            detail=f"Video files only! Allowed types: {SUPPORTED_VIDEO_EXTENSIONS_STR}",
        )

    title = title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise HTTPException(status_code=400, detail=f"Title must be {MAX_TITLE_LENGTH} characters or less")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise HTTPException(status_code=400, detail=f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less")

    object_store = request.app.state.object_store
    if not await check_storage_available():
        raise HTTPException(
            status_code=503,
            detail="Video storage temporarily unavailable. Please try again later.",
            headers={"Retry-After": "30"},
        )

    try:
        stored = await object_store.store_upload(videoFile, build_object_key(videoFile.filename), content_type)
    except UploadTooLargeError as e:
        VIDEO_UPLOADS_TOTAL.labels(result="failed", backend=object_store.backend).inc()
        raise HTTPException(status_code=413, detail=str(e))
    except ObjectStoreError as e:
        VIDEO_UPLOADS_TOTAL.labels(result="failed", backend=object_store.backend).inc()
        logger.warning(f"Storage error during upload of {videoFile.filename}: {e}")
        raise HTTPException(
            status_code=503,
            detail="Video storage temporarily unavailable. Please try again later.",
            headers={"Retry-After": "30"},
        )

    record = await request.app.state.video_store.create(
        owner_id=user["id"],
        title=title,
        description=description,
        storage_reference=stored.reference,
        size=stored.size,
        categories=parse_categories(categories),
    )
    VIDEO_UPLOADS_TOTAL.labels(result="success", backend=object_store.backend).inc()

    _flush(request)
    request.app.state.runner.spawn(record["id"])

    log_audit(
        AuditAction.VIDEO_UPLOAD,
        actor_id=user["id"],
        client_ip=get_real_ip(request),
        resource_type="video",
        resource_id=record["id"],
        resource_name=title,
        details={"filename": videoFile.filename, "size": stored.size, "backend": object_store.backend},
        request_id=get_request_id(request),
    )
    return _serialize(record)


@app.get("/api/videos")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_videos(
    request: Request,
    keyword: Optional[str] = None,
    status: Optional[SensitivityStatus] = None,
    category: Optional[str] = None,
    page_number: int = Query(1, alias="pageNumber", ge=1),
    user: Dict = Depends(get_current_user),
):
    """
    One page of the videos visible to the caller.

    Results depend on who is asking, so the cache key carries the caller's
    id as well as the request path and query.
    """
    cache = request.app.state.response_cache
    cache_key = f"{cache_key_for(request)}#user={user['id']}"
    cached = cache.get(cache_key)
    if cached is not None:
        return cached
    generation = cache.generation()

    records, total = await request.app.state.video_store.list(
        Scope(principal_id=user["id"], role=user["role"]),
        keyword=keyword,
        sensitivity=status.value if status else None,
        category=category,
        page=page_number,
        page_size=VIDEOS_PAGE_SIZE,
    )
    payload = VideoListResponse(
        videos=[VideoResponse.from_record(record) for record in records],
        page=page_number,
        pages=math.ceil(total / VIDEOS_PAGE_SIZE),
    ).model_dump(by_alias=True, mode="json")
    cache.set(cache_key, payload, generation=generation)
    return payload


@app.get("/api/videos/analytics")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def video_analytics(request: Request, user: Dict = Depends(require_role(UserRole.ADMIN))):
    cache = request.app.state.response_cache
    cache_key = cache_key_for(request)
    cached = cache.get(cache_key)
    if cached is not None:
        return cached
    generation = cache.generation()

    store = request.app.state.video_store
    total = await store.count()
    flagged = await store.count(sensitivity=SensitivityStatus.FLAGGED.value)
    payload = AnalyticsResponse(
        total_videos=total,
        flagged_videos=flagged,
        safe_videos=total - flagged,
        reason_data=count_flag_reasons(await store.flagged_reasons()),
    ).model_dump(by_alias=True, mode="json")
    cache.set(cache_key, payload, generation=generation)
    return payload


@app.get("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_video(request: Request, video_id: int):
    cache = request.app.state.response_cache
    cache_key = cache_key_for(request)
    cached = cache.get(cache_key)
    if cached is not None:
        return cached
    generation = cache.generation()

    payload = _serialize(await _get_record_or_404(request, video_id))
    cache.set(cache_key, payload, generation=generation)
    return payload


@app.get("/api/videos/{video_id}/stream")
async def stream(request: Request, video_id: int):
    """Redirect to a signed object URL, or serve a local file with Range support."""
    record = await _get_record_or_404(request, video_id)
    return await stream_video(request, record, request.app.state.signer)


@app.delete("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def delete_video(
    request: Request,
    video_id: int,
    user: Dict = Depends(require_role(UserRole.ADMIN, UserRole.EDITOR)),
):
    """Delete a video. Editors may only delete their own uploads."""
    record = await _get_record_or_404(request, video_id)
    if record["owner_id"] != user["id"] and user["role"] != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Not authorized to delete this video")

    # A moderation run still in flight sees the record vanish and abandons
    await request.app.state.video_store.delete(video_id)
    _flush(request)

    log_audit(
        AuditAction.VIDEO_DELETE,
        actor_id=user["id"],
        client_ip=get_real_ip(request),
        resource_type="video",
        resource_id=video_id,
        resource_name=record["title"],
        request_id=get_request_id(request),
    )
    return {"message": "Video removed"}


@app.put("/api/videos/{video_id}/assign")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def assign_video(
    request: Request,
    video_id: int,
    data: AssignRequest,
    user: Dict = Depends(require_role(UserRole.ADMIN)),
):
    """Replace the set of viewers who may see a video."""
    store = request.app.state.video_store
    await _get_record_or_404(request, video_id)

    assigned = await store.set_assigned_viewers(video_id, data.viewer_ids)
    ignored = sorted(set(data.viewer_ids) - set(assigned))
    if ignored:
        logger.info(f"Ignored non-viewer ids {ignored} when assigning video {video_id}")
    _flush(request)

    log_audit(
        AuditAction.VIDEO_ASSIGN,
        actor_id=user["id"],
        client_ip=get_real_ip(request),
        resource_type="video",
        resource_id=video_id,
        details={"viewer_ids": assigned, "ignored_ids": ignored},
        request_id=get_request_id(request),
    )
    return _serialize(await _get_record_or_404(request, video_id))


@app.post("/api/videos/{video_id}/reprocess", status_code=202)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def reprocess_video(
    request: Request,
    video_id: int,
    user: Dict = Depends(require_role(UserRole.ADMIN)),
):
    """Reset a video to pending and run moderation again."""
    runner = request.app.state.runner
    record = await _get_record_or_404(request, video_id)
    if runner.is_active(video_id):
        raise HTTPException(status_code=409, detail="Moderation is already running for this video")

    await request.app.state.video_store.update_fields(
        video_id,
        processing_status=ProcessingStatus.PENDING,
        sensitivity_status=SensitivityStatus.PENDING,
        flagged_reason="",
    )
    _flush(request)
    runner.spawn(video_id)

    log_audit(
        AuditAction.VIDEO_REPROCESS,
        actor_id=user["id"],
        client_ip=get_real_ip(request),
        resource_type="video",
        resource_id=video_id,
        resource_name=record["title"],
        details={"previous_status": record["processing_status"], "previous_reason": record["flagged_reason"]},
        request_id=get_request_id(request),
    )
    return ReprocessResponse(
        id=video_id,
        processing_status=ProcessingStatus.PENDING,
        sensitivity_status=SensitivityStatus.PENDING,
        message="Video queued for moderation",
    ).model_dump(by_alias=True, mode="json")


# ============ Users ============


@app.get("/api/users/viewers")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_viewers(request: Request, user: Dict = Depends(require_role(UserRole.ADMIN))):
    viewers = await list_users(UserRole.VIEWER)
    return [ViewerResponse(**viewer).model_dump(by_alias=True) for viewer in viewers]


# ============ Events ============


@app.get("/api/events")
async def processing_events(request: Request, user: Dict = Depends(get_current_user)):
    """
    Server-Sent Events stream of moderation progress for the caller's uploads.

    Events are named "video_processing"; their data is the JSON payload built
    by api.events.build_progress_event. Nothing is replayed on reconnect, so
    clients should re-read the video list after reconnecting.
    """
    channel: EventChannel = request.app.state.events

    async def event_generator():
        # Send retry interval for client reconnection
        yield {"event": "retry", "data": str(SSE_RECONNECT_TIMEOUT_MS)}

        subscription = await channel.connect(user["id"])
        loop = asyncio.get_running_loop()
        last_heartbeat = loop.time()
        try:
            while not await request.is_disconnected():
                event = await subscription.next_event(timeout=1.0)
                if event is not None:
                    yield {"event": PROCESSING_EVENT, "data": json.dumps(event)}

                now = loop.time()
                if now - last_heartbeat >= SSE_HEARTBEAT_INTERVAL:
                    yield {
                        "event": "heartbeat",
                        "data": json.dumps({"timestamp": datetime.now(timezone.utc).isoformat()}),
                    }
                    last_heartbeat = now
        except Exception as e:
            logger.warning(f"Event stream for user {user['id']} ended: {e}")
        finally:
            await channel.disconnect(subscription)

    return EventSourceResponse(event_generator())


if __name__ == "__main__":
    import uvicorn

    from config import API_PORT

    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
