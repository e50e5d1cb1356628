"""
Notification values and fan-out queues.

Plugins derive notifications as plain values; the processor hands the
collected changes to a queue after the indexing transaction has committed.
Queue failures are logged and never fail the indexing call.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as aioredis

from .bulk import chunked
from .database import DatabasePool
from .util import SafeJSONEncoder

logger = logging.getLogger(__name__)

NOTIFICATION_CHUNK_SIZE = 500


@dataclass
class Notification:
    did: str
    author: str
    reason: str
    record_uri: str
    record_cid: str
    sort_at: datetime
    reason_subject: Optional[str] = None

    def key(self) -> Tuple[str, str, str, Optional[str]]:
        return (self.did, self.reason, self.record_uri, self.reason_subject)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'did': self.did,
            'author': self.author,
            'reason': self.reason,
            'reasonSubject': self.reason_subject,
            'recordUri': self.record_uri,
            'recordCid': self.record_cid,
            'sortAt': self.sort_at.isoformat() if isinstance(self.sort_at, datetime) else self.sort_at,
        }


@dataclass
class NotificationChanges:
    """Notifications to create and record URIs whose notifications to retract"""

    notifications: List[Notification] = field(default_factory=list)
    to_delete: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.notifications and not self.to_delete

    def deduplicated(self) -> "NotificationChanges":
        return NotificationChanges(
            notifications=dedupe_notifications(self.notifications),
            to_delete=list(dict.fromkeys(self.to_delete)),
        )


def dedupe_notifications(notifications: Iterable[Notification]) -> List[Notification]:
    """Keep the first notification per (recipient, reason, record, subject)"""
    seen = set()
    result = []
    for notif in notifications:
        key = notif.key()
        if key in seen:
            continue
        seen.add(key)
        result.append(notif)
    return result


class NotificationQueue:
    """Fire-and-forget fan-out of notification changes"""

    name = "base"

    async def publish(self, changes: NotificationChanges) -> None:
        if changes.is_empty():
            return
        try:
            await self._publish(changes)
            logger.debug(
                f"[NOTIFY] {self.name}: +{len(changes.notifications)} "
                f"-{len(changes.to_delete)} records"
            )
        except Exception as e:
            logger.error(f"[NOTIFY] Failed to publish notifications via {self.name}: {e}")

    async def _publish(self, changes: NotificationChanges) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class NullNotificationQueue(NotificationQueue):
    """Drops every change (backfills, tests)"""

    name = "none"

    async def _publish(self, changes: NotificationChanges) -> None:
        pass


class DatabaseNotificationQueue(NotificationQueue):
    """Writes notifications into the notifications table"""

    name = "database"

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    async def _publish(self, changes: NotificationChanges) -> None:
        async with self.pool.transaction() as conn:
            for chunk in chunked(changes.to_delete, NOTIFICATION_CHUNK_SIZE):
                await conn.execute(
                    'DELETE FROM notifications WHERE record_uri = ANY($1::text[])',
                    list(chunk),
                )
            for chunk in chunked(changes.notifications, NOTIFICATION_CHUNK_SIZE):
                await conn.executemany(
                    """
                    INSERT INTO notifications (did, record_uri, record_cid, author, reason, reason_subject, sort_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    [
                        (n.did, n.record_uri, n.record_cid, n.author, n.reason, n.reason_subject, n.sort_at)
                        for n in chunk
                    ],
                )


class RedisNotificationQueue(NotificationQueue):
    """
    Publishes changes to a Redis stream.

    Entries use the same framing as the firehose streams: a ``type`` field and
    a JSON ``data`` field. Notifications are ``notification`` entries, retractions
    are a single ``notification-delete`` entry listing record URIs.
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        stream_key: str = "appview:notifications",
        max_stream_len: int = 500000,
    ):
        self.redis_url = redis_url
        self.stream_key = stream_key
        self.max_stream_len = max_stream_len
        self.redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        logger.info(f"[NOTIFY] Connecting to Redis at {self.redis_url}...")
        self.redis = aioredis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_keepalive=True,
        )
        await self.redis.ping()
        logger.info("[NOTIFY] Connected to Redis successfully")

    async def _xadd(self, event_type: str, data: Any) -> None:
        await self.redis.xadd(
            self.stream_key,
            {
                "type": event_type,
                "data": json.dumps(data, cls=SafeJSONEncoder),
            },
            maxlen=self.max_stream_len,
            approximate=True,
        )

    async def _publish(self, changes: NotificationChanges) -> None:
        if self.redis is None:
            await self.connect()
        if changes.to_delete:
            await self._xadd("notification-delete", {"recordUris": changes.to_delete})
        for notif in changes.notifications:
            await self._xadd("notification", notif.to_dict())

    async def close(self) -> None:
        if self.redis:
            await self.redis.aclose()
            self.redis = None


def make_notification_queue(kind: str, pool: Optional[DatabasePool] = None, **redis_options) -> NotificationQueue:
    """Build the queue named by the NOTIFICATION_QUEUE setting"""
    if kind == 'none':
        return NullNotificationQueue()
    if kind == 'redis':
        return RedisNotificationQueue(**redis_options)
    if kind == 'database':
        if pool is None:
            raise ValueError("The database notification queue needs a DatabasePool")
        return DatabaseNotificationQueue(pool)
    raise ValueError(f"Unknown notification queue: {kind}")
