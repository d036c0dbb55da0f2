from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from vauth.logging import get_logger
from vauth.storage.models import utcnow

logger = get_logger(__name__)

ADMIN_TOPIC = "admin"

# Lifecycle events published on the admin topic
TOKEN_ISSUED = "token-issued"
TOKEN_VERIFIED = "token-verified"
TOKEN_REJECTED = "token-rejected"
TOKEN_EXPIRED = "token-expired"
TOKENS_SWEPT = "tokens-swept"
TOKENS_PURGED = "tokens-purged"
SESSION_OPENED = "session-opened"
SESSION_EXPIRED = "session-expired"
SESSION_FORCED_LOGOUT = "session-forced-logout"
USER_LOGIN_ATTEMPT = "user-login-attempt"
USER_LOGOUT = "user-logout"
SECURITY_ALERT = "security-alert"
VIRTUAL_TOKEN_GENERATED = "virtual-token-generated"
# Published on the per-device topic only
TOKEN_DELIVERED = "token-delivered"


DEVICE_TOPIC_PREFIX = "device:"


def device_topic(device_id: str) -> str:
    return f"{DEVICE_TOPIC_PREFIX}{device_id}"


class LocalBroadcast:
    """In-process fan-out to WebSocket subscribers.

    Each subscriber owns a bounded queue; a full queue drops the message for that
    subscriber only so a slow consumer never blocks publishers.
    """

    def __init__(self, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(queue)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        with self._lock:
            queues = self._subscribers.get(topic, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._subscribers.pop(topic, None)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))

    def publish(self, topic: str, message: Dict[str, Any]) -> int:
        with self._lock:
            queues = list(self._subscribers.get(topic, []))
        delivered = 0
        for queue in queues:
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("event_subscriber_queue_full", topic=topic, event=message.get("event"))
        return delivered


class EventNotifier:
    """Best-effort publisher of lifecycle events.

    Messages go to the in-process broadcast synchronously. When a cache is
    configured they are also mirrored to Redis pub/sub on ``vauth:<topic>`` from
    background tasks, so a slow Redis never delays the publishing request.
    Device topics carry plaintext tokens and stay in-process. Publishing never
    raises.
    """

    def __init__(
        self,
        broadcast: Optional[LocalBroadcast] = None,
        cache=None,
        *,
        admin_topic: str = ADMIN_TOPIC,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.broadcast = broadcast or LocalBroadcast()
        self.cache = cache
        self.admin_topic = admin_topic
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def publish(
        self,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        topic: Optional[str] = None,
    ) -> None:
        target = topic or self.admin_topic
        message: Dict[str, Any] = {"event": event, "timestamp": self._clock().isoformat()}
        message.update(payload or {})
        try:
            self.broadcast.publish(target, message)
        except Exception as exc:
            logger.warning("event_broadcast_failed", topic=target, event=event, error=str(exc))
        if self.cache is None or target.startswith(DEVICE_TOPIC_PREFIX):
            return
        task = asyncio.create_task(self._mirror(target, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _mirror(self, target: str, message: Dict[str, Any]) -> None:
        try:
            await self.cache.publish(f"vauth:{target}", message)
        except Exception as exc:
            logger.warning(
                "event_redis_publish_failed",
                topic=target,
                event=message.get("event"),
                error=str(exc),
            )

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight Redis mirrors; cancel whatever is left after ``timeout``."""
        if not self._pending:
            return
        tasks = list(self._pending)
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("event_mirror_drain_timeout", cancelled=len(still_running))


class TokenDelivery(ABC):
    """Hands a freshly issued plaintext token to its device."""

    @abstractmethod
    async def deliver(self, device_id: str, plain_secret: str, expires_at: datetime) -> None:
        ...


class DeviceTopicDelivery(TokenDelivery):
    """Publishes the plaintext on the device's own topic, never on the admin topic."""

    def __init__(self, notifier: EventNotifier) -> None:
        self.notifier = notifier

    async def deliver(self, device_id: str, plain_secret: str, expires_at: datetime) -> None:
        await self.notifier.publish(
            TOKEN_DELIVERED,
            {"device_id": device_id, "token": plain_secret, "expires_at": expires_at.isoformat()},
            topic=device_topic(device_id),
        )
