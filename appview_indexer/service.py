"""
Indexing service.

Inbound surface for the upstream repository-event consumer: onCreate,
onCreateBulk, onUpdate and onDelete, plus the operator recount path and the
thread read helper.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from . import aggregates, schema, threads
from .cid import cid_for_record
from .config import IndexerConfig
from .database import DatabasePool
from .errors import InvalidRecordError
from .notifications import NotificationQueue, make_notification_queue
from .plugins import PluginRegistry, RecordInput
from .processor import BulkResult, RecordProcessor
from .uris import AtUri
from .util import parse_indexed_at

logger = logging.getLogger(__name__)

Timestamp = Union[str, datetime, None]


class IndexingService:
    """Owns the pool, the plugin registry, the processor and the notification queue"""

    def __init__(
        self,
        config: IndexerConfig,
        pool: Optional[DatabasePool] = None,
        queue: Optional[NotificationQueue] = None,
    ):
        self.config = config
        self.pool = pool or DatabasePool(config.database_url, pool_size=config.db_pool_size)
        self.queue = queue or make_notification_queue(
            config.notification_queue,
            self.pool,
            redis_url=config.redis_url,
            stream_key=config.notification_stream_key,
            max_stream_len=config.notification_stream_maxlen,
        )
        self.registry = PluginRegistry(reply_notif_depth=config.reply_notif_depth)
        self.processor = RecordProcessor(
            self.pool,
            self.registry,
            self.queue,
            bulk_batch_size=config.bulk_batch_size,
        )

    async def start(self, verify_schema: bool = True):
        await self.pool.connect(verify_schema=verify_schema)
        logger.info(
            f"[INDEXER] Ready with {len(self.registry)} record plugins, "
            f"notifications via {self.queue.name}"
        )

    async def close(self):
        await self.queue.close()
        await self.pool.close()

    async def init_schema(self):
        async with self.pool.acquire() as conn:
            await schema.apply_schema(conn)

    @staticmethod
    def _prepare(uri: Union[str, AtUri], cid: Optional[str], record: Dict[str, Any], timestamp: Timestamp) -> RecordInput:
        parsed = uri if isinstance(uri, AtUri) else AtUri.parse(uri)
        if not parsed.collection or not parsed.rkey:
            raise InvalidRecordError(f"Record URI must name a collection and rkey: {uri}", str(uri))
        if not isinstance(record, dict):
            raise InvalidRecordError(f"Record body for {uri} is not an object", str(uri))
        return RecordInput(
            uri=parsed,
            cid=cid or cid_for_record(record),
            record=record,
            timestamp=parse_indexed_at(timestamp),
        )

    async def on_create(
        self,
        uri: Union[str, AtUri],
        cid: Optional[str],
        record: Dict[str, Any],
        timestamp: Timestamp = None,
        disable_notifications: bool = False,
    ) -> Optional[Any]:
        item = self._prepare(uri, cid, record, timestamp)
        return await self.processor.create(
            item.uri, item.cid, item.record, item.timestamp,
            disable_notifications=disable_notifications,
        )

    async def on_create_bulk(
        self,
        records: Iterable[Dict[str, Any]],
        disable_notifications: bool = False,
    ) -> BulkResult:
        """Records are dicts with ``uri``, ``record`` and optional ``cid`` / ``indexedAt``"""
        items = [
            self._prepare(r.get('uri'), r.get('cid'), r.get('record'), r.get('indexedAt'))
            for r in records
        ]
        return await self.processor.create_bulk(items, disable_notifications=disable_notifications)

    async def on_update(
        self,
        uri: Union[str, AtUri],
        cid: Optional[str],
        record: Dict[str, Any],
        timestamp: Timestamp = None,
        disable_notifications: bool = False,
    ) -> Optional[Any]:
        item = self._prepare(uri, cid, record, timestamp)
        return await self.processor.update(
            item.uri, item.cid, item.record, item.timestamp,
            disable_notifications=disable_notifications,
        )

    async def on_delete(self, uri: Union[str, AtUri], cascading: bool = False) -> Optional[Any]:
        parsed = uri if isinstance(uri, AtUri) else AtUri.parse(uri)
        return await self.processor.delete(parsed, cascading=cascading)

    async def recompute_aggregates(
        self,
        post_uris: Iterable[str] = (),
        actor_dids: Iterable[str] = (),
    ) -> Dict[str, int]:
        """Recount counters for the given subjects, e.g. after AggregateMaintenanceError"""
        async with self.pool.acquire() as conn:
            posts = await aggregates.recompute_posts(conn, post_uris)
            actors = await aggregates.recompute_actors(conn, actor_dids)
        return {'posts': posts, 'actors': actors}

    async def get_thread(self, uri: str) -> Dict[str, List[Dict[str, Any]]]:
        async with self.pool.acquire() as conn:
            return await threads.get_thread(
                conn, uri,
                height=self.config.reply_notif_depth,
                depth=self.config.reply_notif_depth,
            )
