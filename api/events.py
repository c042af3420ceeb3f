"""
Per-user progress events for the moderation pipeline.

Every connected client is registered under its principal id; an event emitted
for a user reaches all of that user's open connections and nobody else.
Delivery is best effort: events emitted while a user has no connection are
lost, a slow connection whose queue is full drops events, and nothing is
replayed on reconnect.

When Redis is configured, events travel over the channel
"<prefix>:user:<id>" so that a pipeline running in one API process reaches
clients connected to another. Without Redis, events are delivered directly
to the queues of the current process. Connections opened while Redis was
unreachable keep reading their local queue, so they are fed directly after
every publish; when a publish fails, every connection is fed directly.

Event payload (event name "video_processing"):
    {"videoId": 12, "status": "processing", "progress": 50,
     "msg": "AI Analysis in progress...", "sensitivity": ..., "reason": ...}
Optional keys are omitted when not set.
"""

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, Optional, Set

from api.metrics import EVENT_SUBSCRIBERS_ACTIVE, EVENTS_PUBLISHED_TOTAL
from api.redis_client import get_redis, report_redis_failure
from config import EVENT_QUEUE_MAX_SIZE, REDIS_PUBSUB_PREFIX, REDIS_URL

logger = logging.getLogger(__name__)

PROCESSING_EVENT = "video_processing"


def channel_name(principal_id: int) -> str:
    """Redis channel carrying events for one principal."""
    return f"{REDIS_PUBSUB_PREFIX}:user:{principal_id}"


def build_progress_event(
    video_id: int,
    status: str,
    msg: str,
    progress: Optional[int] = None,
    sensitivity: Optional[str] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a video_processing payload, leaving out unset optional fields."""
    payload: Dict[str, Any] = {"videoId": video_id, "status": status}
    if progress is not None:
        payload["progress"] = progress
    payload["msg"] = msg
    if sensitivity is not None:
        payload["sensitivity"] = sensitivity
    if reason is not None:
        payload["reason"] = reason
    return payload


class Subscription:
    """One live connection of a principal to the event channel."""

    def __init__(self, principal_id: int, queue: asyncio.Queue, pubsub=None):
        self.principal_id = principal_id
        self._queue = queue
        self._pubsub = pubsub
        self._closed = False

    @property
    def uses_redis(self) -> bool:
        return self._pubsub is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, payload: Dict[str, Any]) -> bool:
        """Queue a payload for this connection; False when the queue is full."""
        try:
            self._queue.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            return False

    async def next_event(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Wait for the next event.

        Returns None if nothing arrived within timeout. Redis errors propagate
        so the caller can end the stream.
        """
        if self._pubsub is not None:
            # Events delivered locally while Redis publishing was failing
            if not self._queue.empty():
                return self._queue.get_nowait()
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
            if message is None or message.get("type") != "message":
                return self._queue.get_nowait() if not self._queue.empty() else None
            try:
                return json.loads(message.get("data") or "{}")
            except json.JSONDecodeError:
                logger.debug(f"Invalid JSON on event channel: {message}")
                return None

        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield events until the subscription is closed."""
        while not self._closed:
            event = await self.next_event(timeout=1.0)
            if event is not None:
                yield event

    async def close(self) -> None:
        self._closed = True
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(channel_name(self.principal_id))
                await self._pubsub.aclose()
            except Exception as e:
                logger.debug(f"Error closing event subscription: {e}")
            finally:
                self._pubsub = None


class EventChannel:
    """Registry of live connections keyed by principal id."""

    def __init__(self, use_redis: Optional[bool] = None, queue_size: int = EVENT_QUEUE_MAX_SIZE):
        self._use_redis = bool(REDIS_URL) if use_redis is None else use_redis
        self._queue_size = queue_size
        self._connections: Dict[int, Set[Subscription]] = defaultdict(set)

    async def connect(self, principal_id: int) -> Subscription:
        """Register a new connection for principal_id."""
        pubsub = None
        if self._use_redis:
            redis = await get_redis()
            if redis is not None:
                try:
                    pubsub = redis.pubsub()
                    await pubsub.subscribe(channel_name(principal_id))
                except Exception as e:
                    logger.warning(f"Event subscription via Redis failed, using local delivery: {e}")
                    await report_redis_failure()
                    pubsub = None

        subscription = Subscription(principal_id, asyncio.Queue(maxsize=self._queue_size), pubsub)
        self._connections[principal_id].add(subscription)
        EVENT_SUBSCRIBERS_ACTIVE.inc()
        logger.debug(f"Event connection opened for user {principal_id} (redis={subscription.uses_redis})")
        return subscription

    async def disconnect(self, subscription: Subscription) -> None:
        connections = self._connections.get(subscription.principal_id)
        if connections is not None and subscription in connections:
            connections.discard(subscription)
            EVENT_SUBSCRIBERS_ACTIVE.dec()
            if not connections:
                del self._connections[subscription.principal_id]
        await subscription.close()

    def connection_count(self, principal_id: Optional[int] = None) -> int:
        if principal_id is not None:
            return len(self._connections.get(principal_id, ()))
        return sum(len(connections) for connections in self._connections.values())

    async def emit(self, principal_id: int, payload: Dict[str, Any]) -> None:
        """Send payload to every connection of principal_id. Never raises."""
        if self._use_redis:
            redis = await get_redis()
            if redis is not None:
                try:
                    await redis.publish(channel_name(principal_id), json.dumps(payload))
                    EVENTS_PUBLISHED_TOTAL.labels(transport="redis", result="delivered").inc()
                    # Connections opened while Redis was down only read their queue
                    self._deliver_local(principal_id, payload, local_only=True)
                    return
                except Exception as e:
                    logger.warning(f"Failed to publish event for user {principal_id}, delivering locally: {e}")
                    EVENTS_PUBLISHED_TOTAL.labels(transport="redis", result="failed").inc()
                    await report_redis_failure()

        self._deliver_local(principal_id, payload)

    def _deliver_local(self, principal_id: int, payload: Dict[str, Any], local_only: bool = False) -> int:
        delivered = 0
        for subscription in list(self._connections.get(principal_id, ())):
            if local_only and subscription.uses_redis:
                continue
            if subscription.offer(dict(payload)):
                delivered += 1
                EVENTS_PUBLISHED_TOTAL.labels(transport="local", result="delivered").inc()
            else:
                logger.debug(f"Event queue full for user {principal_id}, dropping event")
                EVENTS_PUBLISHED_TOTAL.labels(transport="local", result="dropped").inc()
        return delivered

    async def aclose(self) -> None:
        """Close every open connection (shutdown)."""
        for connections in list(self._connections.values()):
            for subscription in list(connections):
                await self.disconnect(subscription)
